"""Client-submitted purchase verification."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.subscription import SubscriptionStatus


class ApplePurchaseRequest(BaseModel):
    user_id: UUID
    receipt_data: str = Field(min_length=1)
    product_id: str = Field(min_length=1)


class AppleRestoreRequest(BaseModel):
    user_id: UUID
    receipt_data: str = Field(min_length=1)


class GooglePurchaseRequest(BaseModel):
    user_id: UUID
    product_id: str = Field(min_length=1)
    purchase_token: str = Field(min_length=1)


class PurchaseVerificationResult(BaseModel):
    """Structured outcome returned to the client app."""

    success: bool
    reason: str | None = None
    subscription_id: UUID | None = None
    status: SubscriptionStatus | None = None
    expires_at: datetime | None = None
    is_trial: bool = False
