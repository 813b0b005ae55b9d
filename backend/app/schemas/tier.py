from datetime import datetime

from pydantic import BaseModel

from app.models.plan import SubscriptionTier


class EffectiveTier(BaseModel):
    """What authorization middleware needs to gate content."""

    tier: SubscriptionTier
    expires_at: datetime | None = None
    is_in_grace: bool = False
