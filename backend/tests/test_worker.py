"""Tests for worker background tasks and cron job registration."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.schemas.provider_event import EventType
from app.services.payment_provider import ManualProvider
from app.services.reconciliation import ReconciliationEngine
from app.worker import (
    WorkerSettings,
    deliver_outbound_messages_task,
    expire_grace_periods_task,
    retry_parked_events_task,
)
from tests.conftest import in_days, make_event


@pytest.fixture
def subscription(db_session, premium_plan, user_id) -> Subscription:
    result = ReconciliationEngine(db_session).apply(
        make_event(
            EventType.PURCHASED,
            product_id="com.example.premium.monthly",
            expires_at=in_days(30),
            user_id=user_id,
            transaction_id="1000000000000001",
            amount=Decimal("9.99"),
            occurred_at=datetime.now(UTC) - timedelta(hours=2),
        )
    )
    return result.subscription


class TestDeliverOutboundMessagesTask:
    @pytest.mark.asyncio
    async def test_delivers_and_retries(self):
        mock_outbox = MagicMock()
        mock_outbox.deliver_pending.return_value = 2
        mock_outbox.retry_failed.return_value = 1

        with patch("app.worker.NotificationOutbox", return_value=mock_outbox):
            result = await deliver_outbound_messages_task({})

        assert result == 3
        mock_outbox.deliver_pending.assert_called_once()
        mock_outbox.retry_failed.assert_called_once()


class TestRetryParkedEventsTask:
    @pytest.mark.asyncio
    async def test_returns_applied_count(self):
        mock_service = MagicMock()
        mock_service.retry_due.return_value = 4

        with patch("app.worker.ParkedEventService", return_value=mock_service):
            result = await retry_parked_events_task({})

        assert result == 4
        mock_service.retry_due.assert_called_once()


class TestExpireGracePeriodsTask:
    @pytest.mark.asyncio
    async def test_grace_deadline_passed(self, db_session, subscription, user_id):
        """A past-due subscription whose grace ran out expires and drops the tier."""
        ReconciliationEngine(db_session).apply(
            make_event(
                EventType.RENEWAL_FAILED,
                grace_period_end=datetime.now(UTC) - timedelta(minutes=5),
                occurred_at=datetime.now(UTC) - timedelta(hours=1),
            )
        )

        assert await expire_grace_periods_task({}) == 1

        db_session.expire_all()
        sub = db_session.query(Subscription).one()
        assert sub.status == SubscriptionStatus.EXPIRED.value
        user = db_session.query(User).filter(User.id == user_id).one()
        assert user.subscription_tier == "free"

    @pytest.mark.asyncio
    async def test_is_idempotent(self, db_session, subscription):
        ReconciliationEngine(db_session).apply(
            make_event(
                EventType.RENEWAL_FAILED,
                grace_period_end=datetime.now(UTC) - timedelta(minutes=5),
                occurred_at=datetime.now(UTC) - timedelta(hours=1),
            )
        )

        assert await expire_grace_periods_task({}) == 1
        assert await expire_grace_periods_task({}) == 0

    @pytest.mark.asyncio
    async def test_lapsed_cancellation(self, db_session, subscription):
        """A subscription set to cancel expires once its period is over."""
        subscription.cancel_at_period_end = True
        subscription.current_period_end = datetime.now(UTC) - timedelta(minutes=1)
        db_session.commit()

        assert await expire_grace_periods_task({}) == 1

        db_session.expire_all()
        assert db_session.query(Subscription).one().status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_manual_grant_lapses(self, db_session, premium_plan, user_id):
        """A fixed-length grant expires at its period end and the user drops to free."""
        event = ManualProvider().grant(user_id, premium_plan, 30, "ops@example.com", "grant-1")
        grant = ReconciliationEngine(db_session).apply(event).subscription
        assert grant.cancel_at_period_end is True

        grant.current_period_end = datetime.now(UTC) - timedelta(days=1)
        db_session.commit()

        assert await expire_grace_periods_task({}) == 1

        db_session.expire_all()
        assert db_session.query(Subscription).one().status == SubscriptionStatus.EXPIRED.value
        user = db_session.query(User).filter(User.id == user_id).one()
        assert user.subscription_tier == "free"

    @pytest.mark.asyncio
    async def test_nothing_due(self, db_session, subscription):
        assert await expire_grace_periods_task({}) == 0
        db_session.expire_all()
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE.value


class TestWorkerSettings:
    def test_functions_registered(self):
        names = {f.__name__ for f in WorkerSettings.functions}
        assert names == {
            "deliver_outbound_messages_task",
            "retry_parked_events_task",
            "expire_grace_periods_task",
        }

    def test_cron_jobs(self):
        assert len(WorkerSettings.cron_jobs) == 3
