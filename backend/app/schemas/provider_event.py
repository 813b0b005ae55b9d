"""Canonical provider event produced by every adapter."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import PaymentProvider


class EventType(str, Enum):
    PURCHASED = "purchased"
    RENEWED = "renewed"
    RENEWAL_FAILED = "renewal_failed"
    GRACE_PERIOD_STARTED = "grace_period_started"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    REVOKED = "revoked"
    RENEWAL_STATUS_CHANGED = "renewal_status_changed"
    PRODUCT_CHANGED = "product_changed"
    EXTENDED = "extended"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_DISPUTED = "payment_disputed"


# Events that operate on a payment rather than a subscription lineage.
PAYMENT_EVENT_TYPES = frozenset({EventType.PAYMENT_REFUNDED, EventType.PAYMENT_DISPUTED})


class ProviderRefund(BaseModel):
    """A refund reported by the provider, e.g. on Stripe ``charge.refunded``."""

    model_config = ConfigDict(extra="forbid")

    provider_refund_id: str
    amount: Decimal
    status: str = "succeeded"


class ProviderEvent(BaseModel):
    """Provider-agnostic subscription event.

    ``original_transaction_id`` is the lineage key: Stripe subscription id,
    Apple original transaction id, Google purchase token, or the synthetic key
    of a manual grant.
    """

    model_config = ConfigDict(extra="forbid")

    provider: PaymentProvider
    provider_event_id: str = Field(min_length=1)
    type: EventType
    original_transaction_id: str | None = None
    product_id: str | None = None
    expires_at: datetime | None = None
    is_trial: bool = False
    occurred_at: datetime

    # Enrichment carried by some providers
    user_id: UUID | None = None
    subscription_id: UUID | None = None
    transaction_id: str | None = None
    customer_id: str | None = None
    period_start: datetime | None = None
    grace_period_end: datetime | None = None
    auto_renew: bool | None = None
    amount: Decimal | None = None
    currency: str | None = None
    refunds: list[ProviderRefund] = Field(default_factory=list)
    duration_days: int | None = None
    initiated_by: str | None = None
    reason: str | None = None
    environment: str | None = None

    @property
    def dedup_key(self) -> str:
        return f"{self.provider.value}:{self.provider_event_id}"

    @property
    def lineage_ref(self) -> str | None:
        if self.original_transaction_id is None:
            return None
        return f"{self.provider.value}:{self.original_transaction_id}"
