"""Payment and refund schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import PaymentProvider, PaymentStatus
from app.models.refund import RefundInitiator, RefundStatus


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    subscription_id: UUID | None
    amount: Decimal
    refunded_amount: Decimal
    currency: str
    status: PaymentStatus
    provider: PaymentProvider
    provider_payment_id: str | None
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None


class RefundCreate(BaseModel):
    """Schema for requesting a refund; omit ``amount`` to refund the remainder."""

    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=1000)
    initiated_by: RefundInitiator = RefundInitiator.ADMIN


class RefundResponse(BaseModel):
    """Schema for refund response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    amount: Decimal
    currency: str
    provider_refund_id: str | None
    initiated_by: RefundInitiator
    status: RefundStatus
    reason: str | None
    created_at: datetime
    processed_at: datetime | None
