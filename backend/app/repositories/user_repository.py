from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.plan import SubscriptionTier
from app.models.user import User


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: UUID, for_update: bool = False) -> User | None:
        query = self.db.query(User).filter(User.id == user_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_or_create(self, user_id: UUID, for_update: bool = False) -> User:
        """Return the user row, creating a bare projection row if absent."""
        user = self.get_by_id(user_id, for_update=for_update)
        if user is None:
            user = User(id=user_id, subscription_tier=SubscriptionTier.FREE.value)
            self.db.add(user)
            self.db.flush()
        return user

    def set_tier(
        self, user: User, tier: SubscriptionTier, expires_at: datetime | None
    ) -> User:
        user.subscription_tier = tier.value  # type: ignore[assignment]
        user.subscription_expires_at = expires_at  # type: ignore[assignment]
        self.db.flush()
        return user
