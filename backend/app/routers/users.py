from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.subscription import Subscription
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.subscription import SubscriptionResponse
from app.schemas.tier import EffectiveTier
from app.services.tier_resolver import TierResolver

router = APIRouter()


@router.get(
    "/{user_id}/tier",
    response_model=EffectiveTier,
    summary="Get a user's effective tier",
)
async def get_effective_tier(
    user_id: UUID,
    db: Session = Depends(get_db),
) -> EffectiveTier:
    """Unknown users resolve to the free tier."""
    return TierResolver(db).effective_tier(user_id)


@router.get(
    "/{user_id}/subscriptions",
    response_model=list[SubscriptionResponse],
    summary="List a user's subscriptions",
)
async def list_user_subscriptions(
    user_id: UUID,
    db: Session = Depends(get_db),
) -> list[Subscription]:
    return SubscriptionRepository(db).get_by_user(user_id)
