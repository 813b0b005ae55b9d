from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.refund import COUNTED_REFUND_STATUSES, Refund, RefundInitiator, RefundStatus


class RefundRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, refund_id: UUID) -> Refund | None:
        return self.db.query(Refund).filter(Refund.id == refund_id).first()

    def get_by_provider_refund_id(self, provider_refund_id: str) -> Refund | None:
        return (
            self.db.query(Refund).filter(Refund.provider_refund_id == provider_refund_id).first()
        )

    def get_by_payment(self, payment_id: UUID) -> list[Refund]:
        return (
            self.db.query(Refund)
            .filter(Refund.payment_id == payment_id)
            .order_by(Refund.created_at.asc())
            .all()
        )

    def get_pending_for_payments(self, payment_ids: list[UUID]) -> list[Refund]:
        if not payment_ids:
            return []
        return (
            self.db.query(Refund)
            .filter(
                Refund.payment_id.in_(payment_ids),
                Refund.status == RefundStatus.PENDING.value,
            )
            .all()
        )

    def sum_counted(self, payment_id: UUID) -> Decimal:
        """Sum of refund amounts that hold part of the payment (pending or succeeded)."""
        total = (
            self.db.query(func.coalesce(func.sum(Refund.amount), 0))
            .filter(
                Refund.payment_id == payment_id,
                Refund.status.in_(COUNTED_REFUND_STATUSES),
            )
            .scalar()
        )
        return Decimal(str(total))

    def create(
        self,
        *,
        payment_id: UUID,
        amount: Decimal,
        currency: str,
        initiated_by: RefundInitiator,
        status: RefundStatus,
        provider_refund_id: str | None = None,
        reason: str | None = None,
    ) -> Refund:
        refund = Refund(
            payment_id=payment_id,
            amount=amount,
            currency=currency,
            initiated_by=initiated_by.value,
            status=status.value,
            provider_refund_id=provider_refund_id,
            reason=reason,
            processed_at=None if status == RefundStatus.PENDING else datetime.now(UTC),
        )
        self.db.add(refund)
        self.db.flush()
        return refund

    def set_status(self, refund: Refund, status: RefundStatus) -> Refund:
        refund.status = status.value  # type: ignore[assignment]
        if status != RefundStatus.PENDING:
            refund.processed_at = datetime.now(UTC)  # type: ignore[assignment]
        self.db.flush()
        return refund
