import logging
from datetime import UTC, datetime
from typing import Any

from arq import cron

from app.core.database import new_session
from app.core.errors import ReconciliationError
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.provider_event import EventType
from app.services.notification_outbox import NotificationOutbox
from app.services.parked_events import ParkedEventService
from app.services.reconciliation import ApplyOutcome, ReconciliationEngine, synthesized_event
from app.tasks import redis_settings

logger = logging.getLogger(__name__)


async def deliver_outbound_messages_task(ctx: dict[str, Any]) -> int:
    """Background task: deliver pending outbound messages and retry failed ones.

    Failed messages are retried with a 2^n minute backoff until ``max_retries``.
    Runs every minute.
    """
    db = new_session()
    try:
        outbox = NotificationOutbox(db)
        delivered = outbox.deliver_pending()
        retried = outbox.retry_failed()
        if delivered or retried:
            logger.info("Delivered %d outbound messages, retried %d", delivered, retried)
        return delivered + retried
    finally:
        db.close()


async def retry_parked_events_task(ctx: dict[str, Any]) -> int:
    """Background task: replay parked events whose backoff has elapsed.

    Runs every 5 minutes.
    """
    db = new_session()
    try:
        applied = ParkedEventService(db).retry_due()
        if applied > 0:
            logger.info("Applied %d parked events on retry", applied)
        return applied
    finally:
        db.close()


async def expire_grace_periods_task(ctx: dict[str, Any]) -> int:
    """Background task: close out subscriptions whose time has run out.

    Subscriptions still past due after their grace deadline get a
    GRACE_PERIOD_EXPIRED event; subscriptions set to cancel at period end get
    an EXPIRED event once the period is over. Both go through the engine so
    the tier projection and notifications stay consistent.

    Runs hourly.
    """
    db = new_session()
    try:
        now = datetime.now(UTC)
        repo = SubscriptionRepository(db)
        events = [
            synthesized_event(
                sub, EventType.GRACE_PERIOD_EXPIRED, sub.grace_period_end.isoformat()  # type: ignore[union-attr]
            )
            for sub in repo.get_grace_expired(now)
        ]
        events.extend(
            synthesized_event(
                sub,
                EventType.EXPIRED,
                sub.current_period_end.isoformat(),
                reason="cancelled at period end",
            )
            for sub in repo.get_lapsed_cancellations(now)
        )

        engine = ReconciliationEngine(db)
        count = 0
        for event in events:
            try:
                result = engine.apply(event)
            except ReconciliationError as exc:
                logger.error("Could not expire subscription %s: %s", event.subscription_id, exc.message)
                continue
            if result.outcome == ApplyOutcome.APPLIED:
                count += 1

        if count > 0:
            logger.info("Expired %d subscriptions", count)
        return count
    finally:
        db.close()


class WorkerSettings:
    functions = [
        deliver_outbound_messages_task,
        retry_parked_events_task,
        expire_grace_periods_task,
    ]
    cron_jobs = [
        cron(deliver_outbound_messages_task),  # every minute
        cron(
            retry_parked_events_task,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
        ),
        cron(expire_grace_periods_task, minute={0}),  # hourly
    ]
    redis_settings = redis_settings
