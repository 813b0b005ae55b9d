"""Tests for effective tier lookup."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from app.models.plan import SubscriptionTier
from app.schemas.provider_event import EventType
from app.services.reconciliation import ReconciliationEngine
from app.services.tier_resolver import TierResolver
from tests.conftest import in_days, make_event


def purchase(engine, user_id, expires_at):
    return engine.apply(
        make_event(
            EventType.PURCHASED,
            product_id="com.example.premium.monthly",
            expires_at=expires_at,
            user_id=user_id,
            transaction_id="1000000000000001",
            amount=Decimal("9.99"),
            currency="USD",
            occurred_at=datetime.now(UTC) - timedelta(minutes=10),
        )
    ).subscription


class TestTierRanks:
    def test_ranks(self):
        assert SubscriptionTier.FREE.rank == 0
        assert SubscriptionTier.MEDITATION.rank == SubscriptionTier.YOGA.rank == 1
        assert SubscriptionTier.PREMIUM.rank == 2
        assert SubscriptionTier.FAMILY.rank == 3
        assert SubscriptionTier.ENTERPRISE.rank == 4


class TestTierResolver:
    def test_unknown_user_is_free(self, db_session):
        tier = TierResolver(db_session).effective_tier(uuid.uuid4())
        assert tier.tier == SubscriptionTier.FREE
        assert tier.expires_at is None
        assert tier.is_in_grace is False

    def test_active_subscription(self, db_session, premium_plan, user_id):
        expires = in_days(30).replace(microsecond=0)
        purchase(ReconciliationEngine(db_session), user_id, expires)

        tier = TierResolver(db_session).effective_tier(user_id)
        assert tier.tier == SubscriptionTier.PREMIUM
        assert tier.expires_at == expires
        assert tier.is_in_grace is False

    def test_grace_keeps_tier_until_deadline(self, db_session, premium_plan, user_id):
        """A user in billing retry keeps the tier and is flagged as in grace."""
        engine = ReconciliationEngine(db_session)
        purchase(engine, user_id, in_days(30))
        deadline = in_days(40).replace(microsecond=0)
        engine.apply(make_event(EventType.RENEWAL_FAILED, grace_period_end=deadline))

        tier = TierResolver(db_session).effective_tier(user_id)
        assert tier.tier == SubscriptionTier.PREMIUM
        assert tier.is_in_grace is True
        assert tier.expires_at == deadline

    def test_expired_subscription_is_free(self, db_session, premium_plan, user_id):
        engine = ReconciliationEngine(db_session)
        purchase(engine, user_id, in_days(30))
        engine.apply(make_event(EventType.EXPIRED, expires_at=in_days(30)))

        tier = TierResolver(db_session).effective_tier(user_id)
        assert tier.tier == SubscriptionTier.FREE
        assert tier.expires_at is None


class TestTierEndpoint:
    def test_unknown_user(self, client):
        response = client.get(f"/v1/users/{uuid.uuid4()}/tier")
        assert response.status_code == 200
        assert response.json() == {"tier": "free", "expires_at": None, "is_in_grace": False}

    def test_subscription_history(self, client, db_session, premium_plan, user_id):
        purchase(ReconciliationEngine(db_session), user_id, in_days(30))
        response = client.get(f"/v1/users/{user_id}/subscriptions")
        assert response.status_code == 200
        assert [s["status"] for s in response.json()] == ["active"]
