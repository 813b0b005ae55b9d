"""Synchronous verification of purchases submitted by the mobile apps."""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ReceiptError
from app.models.payment import PaymentProvider
from app.models.shared import as_utc, utc_now
from app.models.subscription import SubscriptionStatus
from app.repositories.purchase_verification_repository import PurchaseVerificationRepository
from app.repositories.user_repository import UserRepository
from app.schemas.provider_event import ProviderEvent
from app.schemas.purchase import (
    ApplePurchaseRequest,
    AppleRestoreRequest,
    GooglePurchaseRequest,
    PurchaseVerificationResult,
)
from app.services.payment_providers.apple import AppleProvider
from app.services.payment_providers.google import PAYMENT_PENDING, GoogleProvider
from app.services.reconciliation import ApplyOutcome, ReconciliationEngine

logger = logging.getLogger(__name__)


class PurchaseVerificationService:
    """Verify a store purchase with the store, then reconcile it.

    Every attempt, successful or not, leaves a ``PurchaseVerification`` audit
    row. Failures come back as ``success=False`` with a readable reason.
    """

    def __init__(
        self,
        db: Session,
        apple: AppleProvider | None = None,
        google: GoogleProvider | None = None,
        engine: ReconciliationEngine | None = None,
    ):
        self.db = db
        self.audit_repo = PurchaseVerificationRepository(db)
        self.user_repo = UserRepository(db)
        self.apple = apple or AppleProvider()
        self.google = google or GoogleProvider()
        self.engine = engine or ReconciliationEngine(db)

    def verify_apple(self, request: ApplePurchaseRequest) -> PurchaseVerificationResult:
        try:
            receipt = self.apple.verify_receipt(request.receipt_data)
            event = self.apple.canonicalize_receipt(receipt, request.product_id, request.user_id)
        except (ReceiptError, NotFoundError) as exc:
            return self._failure(
                request.user_id, PaymentProvider.APPLE, exc.message, product_id=request.product_id
            )
        return self._reconcile(event, request.user_id)

    def restore_apple(self, request: AppleRestoreRequest) -> PurchaseVerificationResult:
        try:
            receipt = self.apple.verify_receipt(request.receipt_data)
            event = self.apple.canonicalize_restore(receipt, request.user_id)
        except (ReceiptError, NotFoundError) as exc:
            return self._failure(request.user_id, PaymentProvider.APPLE, exc.message)
        return self._reconcile(event, request.user_id)

    def verify_google(self, request: GooglePurchaseRequest) -> PurchaseVerificationResult:
        try:
            purchase = self.google.client.get_subscription(
                request.product_id, request.purchase_token
            )
        except NotFoundError as exc:
            return self._failure(
                request.user_id, PaymentProvider.GOOGLE, exc.message, product_id=request.product_id
            )

        if purchase.payment_state == PAYMENT_PENDING:
            return self._failure(
                request.user_id,
                PaymentProvider.GOOGLE,
                "Payment is still pending",
                product_id=request.product_id,
                transaction_id=purchase.order_id,
            )

        event = self.google.canonicalize_purchase(
            request.product_id, request.purchase_token, purchase, request.user_id
        )
        result = self._reconcile(event, request.user_id)
        if result.success and purchase.acknowledgement_state == 0:
            self.google.client.acknowledge(request.product_id, request.purchase_token)
        return result

    def _reconcile(self, event: ProviderEvent, user_id: UUID) -> PurchaseVerificationResult:
        expires_at = as_utc(event.expires_at)
        if expires_at is not None and expires_at <= utc_now():
            return self._failure(
                user_id,
                event.provider,
                "Subscription has expired",
                product_id=event.product_id,
                transaction_id=event.transaction_id,
                environment=event.environment,
            )

        result = self.engine.apply(event)
        subscription = result.subscription

        reason = None
        if result.outcome == ApplyOutcome.PARKED:
            reason = result.detail or "Purchase could not be applied"
        elif subscription is None:
            reason = result.detail or "No subscription for this purchase"
        elif subscription.user_id != user_id:
            reason = "Purchase belongs to another account"
        elif not subscription.is_live:
            reason = result.detail or f"Subscription is {subscription.status}"

        if reason is not None or subscription is None:
            return self._failure(
                user_id,
                event.provider,
                reason or "No subscription for this purchase",
                product_id=event.product_id,
                transaction_id=event.transaction_id,
                environment=event.environment,
            )

        self.audit_repo.create(
            user_id=user_id,
            provider=event.provider.value,
            success=True,
            product_id=event.product_id,
            transaction_id=event.transaction_id,
            subscription_id=subscription.id,  # type: ignore[arg-type]
            environment=event.environment,
        )
        self.db.commit()
        self.db.refresh(subscription)
        status = SubscriptionStatus(subscription.status)
        return PurchaseVerificationResult(
            success=True,
            subscription_id=subscription.id,  # type: ignore[arg-type]
            status=status,
            expires_at=as_utc(subscription.current_period_end),  # type: ignore[arg-type]
            is_trial=status == SubscriptionStatus.TRIALING,
        )

    def _failure(
        self,
        user_id: UUID,
        provider: PaymentProvider,
        reason: str,
        product_id: str | None = None,
        transaction_id: str | None = None,
        environment: str | None = None,
    ) -> PurchaseVerificationResult:
        logger.info("Purchase verification failed for user %s: %s", user_id, reason)
        self.user_repo.get_or_create(user_id)
        self.audit_repo.create(
            user_id=user_id,
            provider=provider.value,
            success=False,
            product_id=product_id,
            transaction_id=transaction_id,
            environment=environment,
            reason=reason,
        )
        self.db.commit()
        return PurchaseVerificationResult(success=False, reason=reason)
