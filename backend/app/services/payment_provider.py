"""Payment provider abstraction layer.

Each provider adapter turns its native payloads into canonical
``ProviderEvent``s and knows how (or whether) to move money for a refund.
Stripe and manual grants live here; Apple and Google live in
``app.services.payment_providers``.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import MalformedPayloadError, ProviderUnavailableError, VerificationError
from app.models.payment import Payment, PaymentProvider
from app.models.plan import Plan
from app.models.refund import RefundStatus
from app.models.subscription import Subscription
from app.schemas.provider_event import EventType, ProviderEvent, ProviderRefund
from app.schemas.stripe import (
    StripeCharge,
    StripeCheckoutSession,
    StripeDispute,
    StripeEventEnvelope,
    StripeInvoice,
    StripeRefundObject,
    StripeSubscription,
)

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    """Result of asking a provider to refund money."""

    amount: Decimal
    status: RefundStatus
    provider_refund_id: str | None = None


class PaymentProviderBase(ABC):
    """Abstract base class for payment providers."""

    @property
    @abstractmethod
    def provider_name(self) -> PaymentProvider:
        """Return the provider enum value."""
        pass  # pragma: no cover

    @abstractmethod
    def canonicalize(self, payload: dict[str, Any]) -> ProviderEvent | None:
        """Translate a provider payload into a canonical event.

        Returns ``None`` for notifications that carry no subscription effect.
        """
        pass  # pragma: no cover

    def create_refund(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """Request a refund. App stores own the money movement, so by default
        the refund is only recorded as pending until the store confirms it."""
        return RefundResult(amount=amount, status=RefundStatus.PENDING)


def _to_datetime(timestamp: int | None) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def parse_user_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        raise MalformedPayloadError(f"Invalid user id in provider metadata: {value}") from None


def _cents(value: int) -> Decimal:
    return Decimal(value) / Decimal(100)


STRIPE_REFUND_STATUSES = {
    "succeeded": RefundStatus.SUCCEEDED,
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.CANCELLED,
}


class StripeProvider(PaymentProviderBase):
    """Stripe payment provider implementation."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            import stripe

            stripe.api_key = self.api_key
            self._stripe = stripe
        return self._stripe

    @property
    def provider_name(self) -> PaymentProvider:
        return PaymentProvider.STRIPE

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the event JSON.

        The header signs ``timestamp.payload`` with HMAC-SHA256; events outside
        the tolerance window are rejected as replays.
        """
        if not self.webhook_secret:
            raise VerificationError("Stripe webhook secret is not configured")
        if not signature:
            raise VerificationError("Missing Stripe-Signature header")
        try:
            self.stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=settings.stripe_webhook_tolerance_seconds,
            )
        except (ValueError, self.stripe.SignatureVerificationError) as exc:
            raise VerificationError(f"Invalid Stripe signature: {exc}") from exc

        try:
            event: dict[str, Any] = json.loads(payload)
        except ValueError as exc:
            raise MalformedPayloadError("Stripe payload is not valid JSON") from exc
        return event

    def canonicalize(self, payload: dict[str, Any]) -> ProviderEvent | None:
        """Parse Stripe webhook payload."""
        try:
            envelope = StripeEventEnvelope.model_validate(payload)
            return self._canonicalize(envelope)
        except ValidationError as exc:
            raise MalformedPayloadError(f"Unexpected Stripe payload: {exc}") from exc

    def _canonicalize(self, envelope: StripeEventEnvelope) -> ProviderEvent | None:
        event_type = envelope.type
        obj = envelope.data.object
        base: dict[str, Any] = {
            "provider": PaymentProvider.STRIPE,
            "provider_event_id": envelope.id,
            "occurred_at": _to_datetime(envelope.created),
            "initiated_by": "provider",
        }

        if event_type == "checkout.session.completed":
            session = StripeCheckoutSession.model_validate(obj)
            if not session.subscription:
                return None
            return ProviderEvent(
                **base,
                type=EventType.PURCHASED,
                original_transaction_id=session.subscription,
                product_id=session.metadata.get("price_id"),
                user_id=parse_user_id(
                    session.client_reference_id or session.metadata.get("user_id")
                ),
                customer_id=session.customer,
            )

        if event_type in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            subscription = StripeSubscription.model_validate(obj)
            resolved = self._subscription_event_type(
                event_type, subscription, envelope.data.previous_attributes or {}
            )
            if resolved is None:
                return None
            item = subscription.first_item
            period_start = subscription.current_period_start or (
                item.current_period_start if item else None
            )
            period_end = subscription.current_period_end or (
                item.current_period_end if item else None
            )
            return ProviderEvent(
                **base,
                type=resolved,
                original_transaction_id=subscription.id,
                product_id=item.price.id if item else None,
                expires_at=_to_datetime(period_end),
                period_start=_to_datetime(period_start),
                is_trial=subscription.status == "trialing",
                auto_renew=not subscription.cancel_at_period_end,
                user_id=parse_user_id(subscription.metadata.get("user_id")),
                customer_id=subscription.customer,
            )

        if event_type in ("invoice.paid", "invoice.payment_failed"):
            invoice = StripeInvoice.model_validate(obj)
            if not invoice.subscription:
                return None
            line = invoice.first_line
            details_metadata = (invoice.subscription_details or {}).get("metadata") or {}
            paid = event_type == "invoice.paid"
            resolved = EventType.RENEWED if paid else EventType.RENEWAL_FAILED
            return ProviderEvent(
                **base,
                type=resolved,
                original_transaction_id=invoice.subscription,
                product_id=line.price.id if line and line.price else None,
                expires_at=_to_datetime(line.period.end) if line and line.period else None,
                period_start=_to_datetime(line.period.start) if line and line.period else None,
                is_trial=(
                    paid
                    and invoice.amount_paid == 0
                    and invoice.billing_reason == "subscription_create"
                ),
                user_id=parse_user_id(
                    details_metadata.get("user_id") or invoice.metadata.get("user_id")
                ),
                customer_id=invoice.customer,
                transaction_id=invoice.payment_intent or invoice.charge or invoice.id,
                amount=_cents(invoice.amount_paid if paid else invoice.amount_due),
                currency=invoice.currency.upper(),
            )

        if event_type == "charge.refunded":
            charge = StripeCharge.model_validate(obj)
            refunds = [StripeRefundObject.model_validate(r) for r in charge.refunds.data]
            return ProviderEvent(
                **base,
                type=EventType.PAYMENT_REFUNDED,
                transaction_id=charge.payment_intent or charge.id,
                currency=charge.currency.upper(),
                refunds=[
                    ProviderRefund(
                        provider_refund_id=r.id, amount=_cents(r.amount), status=r.status
                    )
                    for r in refunds
                ],
            )

        if event_type in ("refund.created", "refund.updated", "charge.refund.updated"):
            refund = StripeRefundObject.model_validate(obj)
            payment_ref = obj.get("payment_intent") or obj.get("charge")
            if not payment_ref:
                return None
            return ProviderEvent(
                **base,
                type=EventType.PAYMENT_REFUNDED,
                transaction_id=payment_ref,
                currency=str(obj.get("currency", "usd")).upper(),
                refunds=[
                    ProviderRefund(
                        provider_refund_id=refund.id,
                        amount=_cents(refund.amount),
                        status=refund.status,
                    )
                ],
            )

        if event_type == "charge.dispute.created":
            dispute = StripeDispute.model_validate(obj)
            payment_ref = dispute.payment_intent or dispute.charge
            if not payment_ref:
                return None
            return ProviderEvent(
                **base,
                type=EventType.PAYMENT_DISPUTED,
                transaction_id=payment_ref,
                amount=_cents(dispute.amount),
                reason=dispute.reason,
            )

        logger.debug("Ignoring Stripe event type %s", event_type)
        return None

    @staticmethod
    def _subscription_event_type(
        event_type: str, subscription: StripeSubscription, previous: dict[str, Any]
    ) -> EventType | None:
        if event_type == "customer.subscription.deleted":
            return EventType.CANCELLED
        if event_type == "customer.subscription.created":
            if subscription.status in ("active", "trialing"):
                return EventType.PURCHASED
            return None

        status = subscription.status
        if status in ("incomplete_expired", "canceled"):
            return EventType.EXPIRED
        if status in ("past_due", "unpaid"):
            return EventType.RENEWAL_FAILED
        if status not in ("active", "trialing"):
            return None
        if "items" in previous:
            return EventType.PRODUCT_CHANGED
        if "cancel_at_period_end" in previous:
            return EventType.RENEWAL_STATUS_CHANGED
        return EventType.RENEWED

    def create_refund(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """Issue a Stripe refund; the amount Stripe confirms is authoritative."""
        amount_cents = int((amount * 100).quantize(Decimal("1")))
        params: dict[str, Any] = {
            "payment_intent": payment.provider_payment_id,
            "amount": amount_cents,
            "metadata": {"payment_id": str(payment.id), "reason": reason or ""},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            refund = self.stripe.Refund.create(**params)
        except (
            self.stripe.APIConnectionError,
            self.stripe.RateLimitError,
        ) as exc:
            raise ProviderUnavailableError(f"Stripe refund failed: {exc}") from exc
        except self.stripe.APIError as exc:
            if (getattr(exc, "http_status", None) or 500) >= 500:
                raise ProviderUnavailableError(f"Stripe refund failed: {exc}") from exc
            raise

        return RefundResult(
            amount=_cents(refund.amount),
            status=STRIPE_REFUND_STATUSES.get(refund.status, RefundStatus.PENDING),
            provider_refund_id=refund.id,
        )


class ManualProvider(PaymentProviderBase):
    """Administrator actions expressed as canonical events.

    Manual events skip provider verification; the admin identity is kept as
    ``initiated_by="admin:<id>"`` on the event and its idempotency record.
    """

    @property
    def provider_name(self) -> PaymentProvider:
        return PaymentProvider.MANUAL

    def canonicalize(self, payload: dict[str, Any]) -> ProviderEvent | None:
        """Manual payloads are already canonical (used when replaying)."""
        try:
            return ProviderEvent.model_validate(payload)
        except ValidationError as exc:
            raise MalformedPayloadError(f"Invalid manual event: {exc}") from exc

    def grant(
        self,
        user_id: UUID,
        plan: Plan,
        duration_days: int,
        granted_by: str,
        event_id: str,
        reason: str | None = None,
    ) -> ProviderEvent:
        now = datetime.now(UTC)
        return ProviderEvent(
            provider=PaymentProvider.MANUAL,
            provider_event_id=event_id,
            type=EventType.PURCHASED,
            original_transaction_id=f"grant_{uuid.uuid4().hex}",
            product_id=str(plan.id),
            expires_at=now + timedelta(days=duration_days),
            period_start=now,
            occurred_at=now,
            user_id=user_id,
            duration_days=duration_days,
            auto_renew=False,
            initiated_by=f"admin:{granted_by}",
            reason=reason,
        )

    def extend(
        self,
        subscription: Subscription,
        days: int,
        granted_by: str,
        event_id: str,
        reason: str | None = None,
    ) -> ProviderEvent:
        return ProviderEvent(
            provider=PaymentProvider.MANUAL,
            provider_event_id=event_id,
            type=EventType.EXTENDED,
            subscription_id=subscription.id,
            occurred_at=datetime.now(UTC),
            duration_days=days,
            initiated_by=f"admin:{granted_by}",
            reason=reason,
        )

    def revoke(
        self,
        subscription: Subscription,
        granted_by: str,
        event_id: str,
        reason: str | None = None,
    ) -> ProviderEvent:
        return ProviderEvent(
            provider=PaymentProvider.MANUAL,
            provider_event_id=event_id,
            type=EventType.REVOKED,
            subscription_id=subscription.id,
            occurred_at=datetime.now(UTC),
            initiated_by=f"admin:{granted_by}",
            reason=reason,
        )

    def create_refund(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """Manual refunds are settled offline and recorded as done."""
        return RefundResult(amount=amount, status=RefundStatus.SUCCEEDED)


def get_payment_provider(provider: PaymentProvider) -> PaymentProviderBase:
    """Factory function to get the appropriate payment provider."""
    from app.services.payment_providers.apple import AppleProvider
    from app.services.payment_providers.google import GoogleProvider

    providers: dict[PaymentProvider, type[PaymentProviderBase]] = {
        PaymentProvider.STRIPE: StripeProvider,
        PaymentProvider.APPLE: AppleProvider,
        PaymentProvider.GOOGLE: GoogleProvider,
        PaymentProvider.MANUAL: ManualProvider,
    }

    provider_class = providers.get(provider)
    if not provider_class:
        raise ValueError(f"Unsupported payment provider: {provider}")

    return provider_class()
