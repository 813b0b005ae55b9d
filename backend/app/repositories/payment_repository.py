"""Payment repository for data access."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.payment import Payment, PaymentProvider, PaymentStatus


class PaymentRepository:
    """Repository for Payment model."""

    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        user_id: UUID | None = None,
        subscription_id: UUID | None = None,
        status: PaymentStatus | None = None,
    ) -> list[Payment]:
        """Get all payments with optional filters."""
        query = self.db.query(Payment)
        if user_id:
            query = query.filter(Payment.user_id == user_id)
        if subscription_id:
            query = query.filter(Payment.subscription_id == subscription_id)
        if status:
            query = query.filter(Payment.status == status.value)
        return query.order_by(Payment.created_at.desc()).offset(skip).limit(limit).all()

    def get_by_id(self, payment_id: UUID, for_update: bool = False) -> Payment | None:
        """Get a payment by ID."""
        query = self.db.query(Payment).filter(Payment.id == payment_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_by_provider_id(
        self, provider: PaymentProvider, provider_payment_id: str, for_update: bool = False
    ) -> Payment | None:
        """Get a payment by its provider-side id."""
        query = self.db.query(Payment).filter(
            Payment.provider == provider.value,
            Payment.provider_payment_id == provider_payment_id,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_latest_completed_for_subscription(self, subscription_id: UUID) -> Payment | None:
        return (
            self.db.query(Payment)
            .filter(
                Payment.subscription_id == subscription_id,
                Payment.status.in_(
                    (PaymentStatus.COMPLETED.value, PaymentStatus.PARTIALLY_REFUNDED.value)
                ),
            )
            .order_by(Payment.created_at.desc())
            .first()
        )

    def create(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        currency: str,
        provider: PaymentProvider,
        status: PaymentStatus,
        subscription_id: UUID | None = None,
        provider_payment_id: str | None = None,
        failure_reason: str | None = None,
    ) -> Payment:
        """Create a payment record."""
        payment = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=amount,
            refunded_amount=Decimal("0"),
            currency=currency.upper(),
            provider=provider.value,
            provider_payment_id=provider_payment_id,
            status=status.value,
            failure_reason=failure_reason,
            completed_at=datetime.now(UTC) if status == PaymentStatus.COMPLETED else None,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def set_status(self, payment: Payment, status: PaymentStatus) -> Payment:
        payment.status = status.value  # type: ignore[assignment]
        self.db.flush()
        return payment

    def set_refunded_amount(
        self, payment: Payment, refunded_amount: Decimal, status: PaymentStatus
    ) -> Payment:
        payment.refunded_amount = refunded_amount  # type: ignore[assignment]
        payment.status = status.value  # type: ignore[assignment]
        self.db.flush()
        return payment
