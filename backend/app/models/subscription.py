from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE_PERIOD = "grace_period"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


LIVE_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.GRACE_PERIOD.value,
    }
)
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value})


class Subscription(Base):
    """One row per subscription lineage."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_provider_lineage", "provider", "lineage_key"),
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    plan_id = Column(
        UUIDType, ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    interval = Column(String(20), nullable=False)

    # Stable identifier of the lineage for its provider
    lineage_key = Column(String(255), nullable=False)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True)
    apple_original_transaction_id = Column(String(255), nullable=True, index=True)
    google_purchase_token = Column(String(512), nullable=True, index=True)

    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    grace_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    granted_by = Column(String(255), nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES
