from datetime import datetime
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.payment import PaymentProvider
from app.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: UUID, for_update: bool = False) -> Subscription | None:
        query = self.db.query(Subscription).filter(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_latest_for_lineage(
        self, provider: PaymentProvider, lineage_key: str, for_update: bool = False
    ) -> Subscription | None:
        """Most recent row of a lineage; older rows are terminal history."""
        query = (
            self.db.query(Subscription)
            .filter(
                Subscription.provider == provider.value,
                Subscription.lineage_key == lineage_key,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_by_user(self, user_id: UUID) -> list[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def get_live_for_user(self, user_id: UUID, for_update: bool = False) -> list[Subscription]:
        query = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES),
        )
        if for_update:
            query = query.with_for_update()
        return query.all()

    def count_live_for_user(self, user_id: UUID) -> int:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(LIVE_STATUSES),
            )
            .count()
        )

    def count_live_for_plan(self, plan_id: UUID) -> int:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.plan_id == plan_id,
                Subscription.status.in_(LIVE_STATUSES),
            )
            .count()
        )

    def get_grace_expired(self, now: datetime) -> list[Subscription]:
        """Subscriptions in PAST_DUE/GRACE_PERIOD whose grace deadline has passed."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status.in_(
                    (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.GRACE_PERIOD.value)
                ),
                Subscription.grace_period_end.isnot(None),
                Subscription.grace_period_end <= now,
            )
            .all()
        )

    def get_lapsed_cancellations(self, now: datetime) -> list[Subscription]:
        """Live subscriptions set to cancel, or manual grants, whose period has ended."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status.in_(
                    (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)
                ),
                or_(
                    Subscription.cancel_at_period_end.is_(True),
                    Subscription.provider == PaymentProvider.MANUAL.value,
                ),
                Subscription.current_period_end <= now,
            )
            .all()
        )

    def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription
