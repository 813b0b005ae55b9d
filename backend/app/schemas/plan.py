from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.plan import SubscriptionTier


class PlanCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    tier: SubscriptionTier
    price_monthly: Decimal = Field(default=Decimal("0"), ge=0)
    price_yearly: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    trial_days: int = Field(default=0, ge=0)
    stripe_price_id_monthly: str | None = None
    stripe_price_id_yearly: str | None = None
    apple_product_id_monthly: str | None = None
    apple_product_id_yearly: str | None = None
    google_product_id_monthly: str | None = None
    google_product_id_yearly: str | None = None


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    tier: SubscriptionTier | None = None
    price_monthly: Decimal | None = Field(default=None, ge=0)
    price_yearly: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    trial_days: int | None = Field(default=None, ge=0)
    stripe_price_id_monthly: str | None = None
    stripe_price_id_yearly: str | None = None
    apple_product_id_monthly: str | None = None
    apple_product_id_yearly: str | None = None
    google_product_id_monthly: str | None = None
    google_product_id_yearly: str | None = None


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: str | None
    tier: SubscriptionTier
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str
    trial_days: int
    stripe_price_id_monthly: str | None
    stripe_price_id_yearly: str | None
    apple_product_id_monthly: str | None
    apple_product_id_yearly: str | None
    google_product_id_monthly: str | None
    google_product_id_yearly: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
