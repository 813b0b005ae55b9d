from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import PaymentProvider
from app.models.subscription import SubscriptionStatus


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    plan_id: UUID
    provider: PaymentProvider
    status: SubscriptionStatus
    interval: str
    current_period_start: datetime
    current_period_end: datetime
    trial_start: datetime | None
    trial_end: datetime | None
    grace_period_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    cancel_reason: str | None
    granted_by: str | None
    last_verified_at: datetime | None
    created_at: datetime
    updated_at: datetime


class GrantSubscriptionRequest(BaseModel):
    user_id: UUID
    plan_id: UUID
    duration_days: int = Field(gt=0, le=3650)
    reason: str | None = Field(default=None, max_length=1000)


class ExtendSubscriptionRequest(BaseModel):
    days: int = Field(gt=0, le=3650)
    reason: str | None = Field(default=None, max_length=1000)


class RevokeSubscriptionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class ApplyResultResponse(BaseModel):
    outcome: str
    subscription: SubscriptionResponse | None = None
    detail: str | None = None
