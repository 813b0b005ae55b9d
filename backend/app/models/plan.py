from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class SubscriptionTier(str, Enum):
    FREE = "free"
    MEDITATION = "meditation"
    YOGA = "yoga"
    PREMIUM = "premium"
    FAMILY = "family"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_RANKS[self]


# MEDITATION and YOGA are parallel tiers of equal rank.
TIER_RANKS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.MEDITATION: 1,
    SubscriptionTier.YOGA: 1,
    SubscriptionTier.PREMIUM: 2,
    SubscriptionTier.FAMILY: 3,
    SubscriptionTier.ENTERPRISE: 4,
}


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Fields that may change while a live subscription references the plan.
PLAN_METADATA_FIELDS = frozenset({"name", "description", "is_active"})


class Plan(Base):
    __tablename__ = "plans"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    code = Column(String(100), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    tier = Column(String(20), nullable=False)

    price_monthly = Column(Numeric(12, 4), nullable=False, default=0)
    price_yearly = Column(Numeric(12, 4), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    trial_days = Column(Integer, nullable=False, default=0)

    # Per-provider product identifiers
    stripe_price_id_monthly = Column(String(255), nullable=True, unique=True)
    stripe_price_id_yearly = Column(String(255), nullable=True, unique=True)
    apple_product_id_monthly = Column(String(255), nullable=True, unique=True)
    apple_product_id_yearly = Column(String(255), nullable=True, unique=True)
    google_product_id_monthly = Column(String(255), nullable=True, unique=True)
    google_product_id_yearly = Column(String(255), nullable=True, unique=True)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
