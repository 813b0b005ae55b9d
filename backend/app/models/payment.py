"""Payment model for settled or attempted charges."""

from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    """Payment status enum."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"


class PaymentProvider(str, Enum):
    """Payment rails a subscription can come from."""

    STRIPE = "stripe"
    APPLE = "apple"
    GOOGLE = "google"
    MANUAL = "manual"  # Admin grants and offline payments


REFUNDABLE_STATUSES = frozenset(
    {PaymentStatus.COMPLETED.value, PaymentStatus.PARTIALLY_REFUNDED.value}
)


class Payment(Base):
    """Payment model - one row per charge."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    user_id = Column(
        UUIDType, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    subscription_id = Column(
        UUIDType, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    # Payment details
    amount = Column(Numeric(12, 4), nullable=False)
    refunded_amount = Column(Numeric(12, 4), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    # Provider info
    provider = Column(String(20), nullable=False)
    provider_payment_id = Column(String(255), nullable=True, index=True)

    failure_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
