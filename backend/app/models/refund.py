from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text, func

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RefundInitiator(str, Enum):
    USER = "user"
    ADMIN = "admin"
    PROVIDER = "provider"


# Refund statuses that hold part of the payment amount.
COUNTED_REFUND_STATUSES = frozenset({RefundStatus.PENDING.value, RefundStatus.SUCCEEDED.value})


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    payment_id = Column(
        UUIDType, ForeignKey("payments.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    provider_refund_id = Column(String(255), nullable=True, unique=True)
    initiated_by = Column(String(20), nullable=False, default=RefundInitiator.USER.value)
    status = Column(String(20), nullable=False, default=RefundStatus.PENDING.value)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
