"""Refund ledger.

Every refund against a payment is a ``Refund`` row. Pending and succeeded
refunds both hold part of the payment, so their sum is what the bound
``refunded_amount <= amount`` is enforced on.
"""

import logging
import uuid
from collections.abc import Callable
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import (
    AlreadyRefundedError,
    InvariantViolationError,
    NotFoundError,
    PaymentNotRefundableError,
)
from app.core.locks import lineage_locks
from app.core.retry import call_with_retries
from app.models.payment import REFUNDABLE_STATUSES, Payment, PaymentProvider, PaymentStatus
from app.models.refund import Refund, RefundInitiator, RefundStatus
from app.models.subscription import Subscription
from app.repositories.payment_repository import PaymentRepository
from app.repositories.refund_repository import RefundRepository
from app.schemas.provider_event import EventType, ProviderEvent
from app.services.notification_outbox import NotificationOutbox
from app.services.payment_provider import (
    STRIPE_REFUND_STATUSES,
    PaymentProviderBase,
    get_payment_provider,
)

logger = logging.getLogger(__name__)


def _refund_payload(refund: Refund) -> dict[str, str | None]:
    return {
        "refund_id": str(refund.id),
        "payment_id": str(refund.payment_id),
        "amount": str(refund.amount),
        "currency": str(refund.currency),
        "status": str(refund.status),
        "provider_refund_id": refund.provider_refund_id,  # type: ignore[dict-item]
    }


class RefundLedger:
    """Record refunds and keep each payment's refunded total in bounds."""

    def __init__(
        self,
        db: Session,
        provider_factory: Callable[[PaymentProvider], PaymentProviderBase] = get_payment_provider,
    ):
        self.db = db
        self.payment_repo = PaymentRepository(db)
        self.refund_repo = RefundRepository(db)
        self.outbox = NotificationOutbox(db)
        self.provider_factory = provider_factory

    def create_refund(
        self,
        payment_id: UUID,
        amount: Decimal | None = None,
        reason: str | None = None,
        initiated_by: RefundInitiator = RefundInitiator.USER,
    ) -> Refund:
        """Refund up to what is left on the payment.

        The requested amount is clamped to ``amount - refunded_amount``;
        omitting it refunds the remainder. Stripe refunds go through the
        provider and the amount Stripe confirms is recorded. Store refunds are
        recorded pending until the store's notification arrives.
        """
        with lineage_locks.hold(f"payment:{payment_id}"):
            try:
                refund = self._create_refund(payment_id, amount, reason, initiated_by)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        self.db.refresh(refund)
        return refund

    def _create_refund(
        self,
        payment_id: UUID,
        amount: Decimal | None,
        reason: str | None,
        initiated_by: RefundInitiator,
    ) -> Refund:
        payment = self.payment_repo.get_by_id(payment_id, for_update=True)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))

        max_refundable = Decimal(str(payment.amount)) - Decimal(str(payment.refunded_amount))
        requested = max_refundable if amount is None else min(amount, max_refundable)
        if requested <= 0:
            raise AlreadyRefundedError(
                f"Payment {payment_id} is already fully refunded", payment_id=str(payment_id)
            )
        if payment.status not in REFUNDABLE_STATUSES:
            raise PaymentNotRefundableError(
                f"Payment {payment_id} has status {payment.status}",
                payment_id=str(payment_id),
                status=str(payment.status),
            )
        if amount is not None and amount > max_refundable:
            logger.info(
                "Clamped refund on payment %s from %s to %s", payment_id, amount, requested
            )

        provider = self.provider_factory(PaymentProvider(payment.provider))
        idempotency_key = f"refund-{payment.id}-{uuid.uuid4().hex}"
        result = call_with_retries(
            lambda: provider.create_refund(payment, requested, reason, idempotency_key),
            operation=f"{payment.provider} refund",
        )
        if result.amount > max_refundable:
            raise InvariantViolationError(
                f"Provider confirmed refund {result.amount} above refundable {max_refundable}",
                payment_id=str(payment_id),
            )

        refund = self.refund_repo.create(
            payment_id=payment.id,  # type: ignore[arg-type]
            amount=result.amount,
            currency=str(payment.currency),
            initiated_by=initiated_by,
            status=result.status,
            provider_refund_id=result.provider_refund_id,
            reason=reason,
        )
        self._update_payment_totals(payment)
        self.outbox.enqueue("refund.created", "refund", refund.id, _refund_payload(refund))  # type: ignore[arg-type]
        logger.info(
            "Recorded %s refund %s of %s on payment %s",
            result.status.value,
            refund.id,
            result.amount,
            payment_id,
        )
        return refund

    def record_provider_refund(self, payment: Payment, event: ProviderEvent) -> list[Refund]:
        """Apply refunds a provider reports (Stripe ``charge.refunded`` and friends).

        Runs inside the caller's transaction. Refunds are matched on their
        provider refund id, so one we issued ourselves is updated, not doubled.
        """
        recorded = []
        for reported in event.refunds:
            status = STRIPE_REFUND_STATUSES.get(reported.status, RefundStatus.PENDING)
            existing = self.refund_repo.get_by_provider_refund_id(reported.provider_refund_id)
            if existing is not None:
                if existing.status != status.value:
                    self.refund_repo.set_status(existing, status)
                    self.outbox.enqueue(
                        "refund.updated", "refund", existing.id, _refund_payload(existing)  # type: ignore[arg-type]
                    )
                recorded.append(existing)
                continue

            counted = self.refund_repo.sum_counted(payment.id)  # type: ignore[arg-type]
            if counted + reported.amount > Decimal(str(payment.amount)):
                raise InvariantViolationError(
                    f"Refund {reported.provider_refund_id} would exceed payment {payment.id}",
                    payment_id=str(payment.id),
                )
            refund = self.refund_repo.create(
                payment_id=payment.id,  # type: ignore[arg-type]
                amount=reported.amount,
                currency=str(payment.currency),
                initiated_by=RefundInitiator.PROVIDER,
                status=status,
                provider_refund_id=reported.provider_refund_id,
            )
            self.outbox.enqueue("refund.created", "refund", refund.id, _refund_payload(refund))  # type: ignore[arg-type]
            recorded.append(refund)

        self._update_payment_totals(payment)
        return recorded

    def reconcile_store_refund(self, subscription: Subscription, event: ProviderEvent) -> list[Refund]:
        """Settle pending store refunds when Apple or Google reports the refund.

        Pending refunds on the refunded payment become SUCCEEDED. If the store
        refunded without us asking, the remainder is recorded as a
        provider-initiated refund. Revocations settle pending refunds only.
        """
        payment = None
        if event.transaction_id:
            payment = self.payment_repo.get_by_provider_id(
                event.provider, event.transaction_id, for_update=True
            )
        if payment is None:
            payment = self.payment_repo.get_latest_completed_for_subscription(
                subscription.id  # type: ignore[arg-type]
            )
        if payment is None:
            logger.info("No payment to reconcile for %s on %s", event.type.value, subscription.id)
            return []

        settled = []
        for refund in self.refund_repo.get_pending_for_payments([payment.id]):  # type: ignore[list-item]
            self.refund_repo.set_status(refund, RefundStatus.SUCCEEDED)
            self.outbox.enqueue("refund.updated", "refund", refund.id, _refund_payload(refund))  # type: ignore[arg-type]
            settled.append(refund)

        remaining = Decimal(str(payment.amount)) - self.refund_repo.sum_counted(payment.id)  # type: ignore[arg-type]
        if (
            not settled
            and event.type == EventType.REFUNDED
            and payment.status in REFUNDABLE_STATUSES
            and remaining > 0
        ):
            refund = self.refund_repo.create(
                payment_id=payment.id,  # type: ignore[arg-type]
                amount=remaining,
                currency=str(payment.currency),
                initiated_by=RefundInitiator.PROVIDER,
                status=RefundStatus.SUCCEEDED,
                reason=event.reason,
            )
            self.outbox.enqueue("refund.created", "refund", refund.id, _refund_payload(refund))  # type: ignore[arg-type]
            settled.append(refund)

        self._update_payment_totals(payment)
        return settled

    def list_refunds(self, payment_id: UUID) -> list[Refund]:
        if self.payment_repo.get_by_id(payment_id) is None:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))
        return self.refund_repo.get_by_payment(payment_id)

    def _update_payment_totals(self, payment: Payment) -> None:
        refunded = self.refund_repo.sum_counted(payment.id)  # type: ignore[arg-type]
        total = Decimal(str(payment.amount))
        if refunded > total:
            raise InvariantViolationError(
                f"Refunds {refunded} exceed payment {payment.id} amount {total}",
                payment_id=str(payment.id),
            )

        status = PaymentStatus(payment.status)
        if status == PaymentStatus.DISPUTED:
            pass
        elif refunded >= total:
            status = PaymentStatus.REFUNDED
        elif refunded > 0:
            status = PaymentStatus.PARTIALLY_REFUNDED
        elif status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED):
            status = PaymentStatus.COMPLETED
        self.payment_repo.set_refunded_amount(payment, refunded, status)
