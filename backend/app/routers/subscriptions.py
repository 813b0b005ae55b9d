from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import NotFoundError
from app.models.subscription import Subscription
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.subscription import SubscriptionResponse

router = APIRouter()


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    summary="Get subscription",
    responses={404: {"description": "Subscription not found"}},
)
async def get_subscription(
    subscription_id: UUID,
    db: Session = Depends(get_db),
) -> Subscription:
    subscription = SubscriptionRepository(db).get_by_id(subscription_id)
    if subscription is None:
        raise NotFoundError(
            f"Subscription {subscription_id} not found", subscription_id=str(subscription_id)
        )
    return subscription
