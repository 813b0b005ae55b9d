"""Effective tier lookup for authorization checks.

Reads only the ``users`` projection and the user's live subscription row, so
it never waits on a provider.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from app.models.plan import SubscriptionTier
from app.models.shared import as_utc
from app.models.subscription import SubscriptionStatus
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.user_repository import UserRepository
from app.schemas.tier import EffectiveTier

GRACE_STATUSES = frozenset({SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.GRACE_PERIOD.value})


class TierResolver:
    def __init__(self, db: Session):
        self.db = db
        self.user_repo = UserRepository(db)
        self.subscription_repo = SubscriptionRepository(db)

    def effective_tier(self, user_id: UUID) -> EffectiveTier:
        user = self.user_repo.get_by_id(user_id)
        if user is None:
            return EffectiveTier(tier=SubscriptionTier.FREE)

        live = self.subscription_repo.get_live_for_user(user_id)
        return EffectiveTier(
            tier=SubscriptionTier(user.subscription_tier),
            expires_at=as_utc(user.subscription_expires_at),  # type: ignore[arg-type]
            is_in_grace=any(s.status in GRACE_STATUSES for s in live),
        )
