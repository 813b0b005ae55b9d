"""Subscription state machine.

``ReconciliationEngine.apply`` is the only code that mutates subscriptions.
One call is one database transaction covering the state transition, the
user's tier projection, derived payments and invoices, outbox messages and the
idempotency record. Calls on the same lineage are serialized by a row lock and
an in-process lock. Calls that can start a subscription also lock the user,
which keeps at most one live subscription per user across lineages.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    InvalidTransitionError,
    InvariantViolationError,
    MalformedPayloadError,
    NotEnrolledError,
    NotFoundError,
    ReconciliationError,
    UnknownProductError,
)
from app.core.idempotency import IdempotencyGate
from app.core.locks import lineage_locks
from app.core.retry import backoff_delay
from app.models.parked_event import ParkedEvent, ParkedEventStatus
from app.models.payment import Payment, PaymentProvider, PaymentStatus
from app.models.plan import BillingInterval, Plan, SubscriptionTier
from app.models.shared import as_utc, utc_now
from app.models.subscription import Subscription, SubscriptionStatus
from app.repositories.parked_event_repository import ParkedEventRepository
from app.repositories.payment_repository import PaymentRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.user_repository import UserRepository
from app.schemas.provider_event import PAYMENT_EVENT_TYPES, EventType, ProviderEvent
from app.services.invoice_deriver import InvoiceDeriver
from app.services.notification_outbox import NotificationOutbox
from app.services.refund_ledger import RefundLedger

logger = logging.getLogger(__name__)

INTERVAL_DAYS = {BillingInterval.MONTHLY: 30, BillingInterval.YEARLY: 365}

# Seconds before the first automatic retry of a parked event; doubles per attempt.
PARKED_RETRY_BASE_SECONDS = 60.0

# Events that may move current_period_end forward.
PERIOD_EVENT_TYPES = frozenset(
    {EventType.PURCHASED, EventType.RENEWED, EventType.EXTENDED, EventType.PRODUCT_CHANGED}
)

STORE_PROVIDERS = frozenset({PaymentProvider.APPLE, PaymentProvider.GOOGLE})

# Event types whose outcome is reported on the outbox, keyed to the message type.
SUBSCRIPTION_MESSAGES = {
    EventType.RENEWED: "subscription.renewed",
    EventType.RENEWAL_FAILED: "subscription.past_due",
    EventType.GRACE_PERIOD_STARTED: "subscription.grace_period",
    EventType.GRACE_PERIOD_EXPIRED: "subscription.expired",
    EventType.EXPIRED: "subscription.expired",
    EventType.CANCELLED: "subscription.cancelled",
    EventType.REFUNDED: "subscription.cancelled",
    EventType.REVOKED: "subscription.cancelled",
    EventType.RENEWAL_STATUS_CHANGED: "subscription.renewal_status_changed",
    EventType.PRODUCT_CHANGED: "subscription.plan_changed",
    EventType.EXTENDED: "subscription.extended",
}


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    PARKED = "parked"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    subscription: Subscription | None = None
    detail: str | None = None
    parked_event_id: UUID | None = None


def _later(first: datetime | None, second: datetime | None) -> datetime | None:
    candidates = [d for d in (as_utc(first), as_utc(second)) if d is not None]
    return max(candidates) if candidates else None


class ReconciliationEngine:
    """Apply canonical provider events to subscriptions."""

    def __init__(self, db: Session, refund_ledger: RefundLedger | None = None):
        self.db = db
        self.gate = IdempotencyGate(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.plan_repo = PlanRepository(db)
        self.user_repo = UserRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.parked_repo = ParkedEventRepository(db)
        self.refund_ledger = refund_ledger or RefundLedger(db)
        self.invoice_deriver = InvoiceDeriver(db)
        self.outbox = NotificationOutbox(db)

    # Entry point

    def apply(self, event: ProviderEvent) -> ApplyResult:
        """Apply one event exactly once.

        Returns DUPLICATE for an event already recorded, IGNORED for invalid
        or stale transitions (recorded so redelivery is a no-op), and PARKED
        when the event cannot be applied until an operator acts.
        """
        with lineage_locks.hold(self._lock_key(event)), lineage_locks.hold(
            self._user_lock_key(event)
        ):
            try:
                return self._apply_locked(event)
            except IntegrityError as exc:
                self.db.rollback()
                if self.gate.is_duplicate_race(exc):
                    logger.info("Lost idempotency race for %s, treating as duplicate", event.dedup_key)
                    return ApplyResult(ApplyOutcome.DUPLICATE, self._current(event))
                raise
            except InvariantViolationError:
                self.db.rollback()
                logger.exception("Invariant violated while applying %s", event.dedup_key)
                raise
            except Exception:
                self.db.rollback()
                raise

    def _lock_key(self, event: ProviderEvent) -> str | None:
        if event.lineage_ref is not None:
            return event.lineage_ref
        if event.subscription_id is not None:
            subscription = self.subscription_repo.get_by_id(event.subscription_id)
            if subscription is not None:
                return f"{subscription.provider}:{subscription.lineage_key}"
        if event.type in PAYMENT_EVENT_TYPES and event.transaction_id:
            payment = self.payment_repo.get_by_provider_id(event.provider, event.transaction_id)
            if payment is not None:
                return f"payment:{payment.id}"
        return None

    def _user_lock_key(self, event: ProviderEvent) -> str | None:
        """Purchases and renewals may start a row and retire the user's other live rows."""
        if event.type not in (EventType.PURCHASED, EventType.RENEWED):
            return None
        user_id = event.user_id
        if user_id is None and event.original_transaction_id is not None:
            previous = self.subscription_repo.get_latest_for_lineage(
                event.provider, event.original_transaction_id
            )
            if previous is not None:
                user_id = previous.user_id
        return f"user:{user_id}" if user_id is not None else None

    def _apply_locked(self, event: ProviderEvent) -> ApplyResult:
        if self.gate.is_processed(event):
            logger.info("Skipping already processed event %s", event.dedup_key)
            return ApplyResult(ApplyOutcome.DUPLICATE, self._current(event))

        try:
            if event.type in PAYMENT_EVENT_TYPES:
                subscription = None
                self._apply_payment_event(event)
            else:
                subscription = self._apply_subscription_event(event)
        except (UnknownProductError, NotEnrolledError) as exc:
            self.db.rollback()
            return self._park(event, exc)
        except InvalidTransitionError as exc:
            self.db.rollback()
            logger.info("Ignoring %s (%s): %s", event.dedup_key, event.type.value, exc.message)
            self.gate.record(event, ApplyOutcome.IGNORED.value)
            self.db.commit()
            return ApplyResult(ApplyOutcome.IGNORED, self._current(event), detail=exc.message)

        parked = self.parked_repo.get_by_dedup_key(event.dedup_key)
        if parked is not None and parked.status == ParkedEventStatus.PARKED.value:
            self.parked_repo.set_status(parked, ParkedEventStatus.RESOLVED)

        self.gate.record(event, ApplyOutcome.APPLIED.value)
        self.db.commit()
        if subscription is not None:
            self.db.refresh(subscription)
        logger.info("Applied %s (%s)", event.dedup_key, event.type.value)
        return ApplyResult(ApplyOutcome.APPLIED, subscription)

    def _current(self, event: ProviderEvent) -> Subscription | None:
        if event.subscription_id is not None:
            return self.subscription_repo.get_by_id(event.subscription_id)
        if event.original_transaction_id is not None:
            return self.subscription_repo.get_latest_for_lineage(
                event.provider, event.original_transaction_id
            )
        return None

    # Parking

    def _park(self, event: ProviderEvent, exc: ReconciliationError) -> ApplyResult:
        """Keep an event we cannot apply yet.

        No idempotency record is written, so a redelivery or a replay can
        still apply it once the cause is fixed.
        """
        parked = self.park(event, exc)
        self.db.commit()
        logger.warning(
            "Parked %s (%s): %s [%s]", event.dedup_key, event.type.value, exc.message, exc.code
        )
        return ApplyResult(
            ApplyOutcome.PARKED,
            detail=exc.message,
            parked_event_id=parked.id,  # type: ignore[arg-type]
        )

    def park(self, event: ProviderEvent, exc: ReconciliationError) -> ParkedEvent:
        """Store or update the parked row for ``event`` in the current transaction."""
        existing = self.parked_repo.get_by_dedup_key(event.dedup_key)
        attempts = int(existing.attempts) + 1 if existing is not None else 1
        next_attempt_at = utc_now() + timedelta(
            seconds=backoff_delay(attempts, PARKED_RETRY_BASE_SECONDS)
        )
        if existing is not None:
            if existing.status != ParkedEventStatus.PARKED.value:
                self.parked_repo.set_status(existing, ParkedEventStatus.PARKED)
            return self.parked_repo.record_failure(existing, exc.code, exc.message, next_attempt_at)
        return self.parked_repo.create(
            dedup_key=event.dedup_key,
            provider=event.provider.value,
            event_type=event.type.value,
            payload=event.model_dump(mode="json"),
            error_code=exc.code,
            error_message=exc.message,
            lineage_key=event.lineage_ref,
            next_attempt_at=next_attempt_at,
        )

    # Payment events

    def _apply_payment_event(self, event: ProviderEvent) -> None:
        if not event.transaction_id:
            raise InvalidTransitionError(f"{event.type.value} event carries no payment reference")
        payment = self.payment_repo.get_by_provider_id(
            event.provider, event.transaction_id, for_update=True
        )
        if payment is None:
            raise InvalidTransitionError(
                f"No {event.provider.value} payment {event.transaction_id}",
                transaction_id=event.transaction_id,
            )

        if event.type == EventType.PAYMENT_REFUNDED:
            self.refund_ledger.record_provider_refund(payment, event)
        else:
            self.payment_repo.set_status(payment, PaymentStatus.DISPUTED)
            self.outbox.enqueue(
                "payment.disputed",
                "payment",
                payment.id,  # type: ignore[arg-type]
                {"payment_id": str(payment.id), "reason": event.reason},
            )

    # Subscription events

    def _apply_subscription_event(self, event: ProviderEvent) -> Subscription:
        subscription = self._load_subscription(event)
        handlers = {
            EventType.PURCHASED: self._purchased,
            EventType.RENEWED: self._renewed,
            EventType.RENEWAL_FAILED: self._renewal_failed,
            EventType.GRACE_PERIOD_STARTED: self._grace_period_started,
            EventType.GRACE_PERIOD_EXPIRED: self._grace_period_expired,
            EventType.EXPIRED: self._expired,
            EventType.CANCELLED: self._cancelled,
            EventType.REFUNDED: self._refunded_or_revoked,
            EventType.REVOKED: self._refunded_or_revoked,
            EventType.RENEWAL_STATUS_CHANGED: self._renewal_status_changed,
            EventType.PRODUCT_CHANGED: self._product_changed,
            EventType.EXTENDED: self._extended,
        }
        subscription = handlers[event.type](event, subscription)
        self._touch(subscription, event)
        self.db.flush()
        self._propagate_tier(subscription.user_id)  # type: ignore[arg-type]
        return subscription

    def _load_subscription(self, event: ProviderEvent) -> Subscription | None:
        if event.subscription_id is not None:
            subscription = self.subscription_repo.get_by_id(event.subscription_id, for_update=True)
            if subscription is None:
                raise NotFoundError(
                    f"Subscription {event.subscription_id} not found",
                    subscription_id=str(event.subscription_id),
                )
            return subscription
        if event.original_transaction_id is None:
            raise MalformedPayloadError(f"{event.type.value} event carries no lineage key")
        return self.subscription_repo.get_latest_for_lineage(
            event.provider, event.original_transaction_id, for_update=True
        )

    def _require(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        if subscription is None:
            raise NotEnrolledError(
                f"No subscription for lineage {event.lineage_ref}", lineage=event.lineage_ref
            )
        return subscription

    def _require_live(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        subscription = self._require(event, subscription)
        if not subscription.is_live:
            raise InvalidTransitionError(
                f"Cannot apply {event.type.value} to a {subscription.status} subscription",
                status=str(subscription.status),
            )
        return subscription

    def _check_ordering(self, event: ProviderEvent, subscription: Subscription) -> None:
        """Reject an event older than the last accepted one unless it moves the period forward.

        Refunds and revocations are always accepted.
        """
        last = as_utc(subscription.last_verified_at)  # type: ignore[arg-type]
        occurred = as_utc(event.occurred_at)
        if last is None or occurred is None or occurred >= last:
            return
        if event.type in (EventType.REFUNDED, EventType.REVOKED):
            return

        period_end = as_utc(subscription.current_period_end)  # type: ignore[arg-type]
        expires = as_utc(event.expires_at)
        if expires is not None and period_end is not None:
            if event.type in PERIOD_EVENT_TYPES and expires > period_end:
                return
            if event.type == EventType.EXPIRED and expires >= period_end:
                return
        raise InvalidTransitionError(
            f"Stale {event.type.value} event from {occurred.isoformat()}"
            f" predates last verification at {last.isoformat()}",
            stale=True,
        )

    def _touch(self, subscription: Subscription, event: ProviderEvent) -> None:
        subscription.last_verified_at = _later(  # type: ignore[assignment]
            subscription.last_verified_at, event.occurred_at  # type: ignore[arg-type]
        )

    def _extend_period(self, subscription: Subscription, event: ProviderEvent) -> bool:
        """Move the period end to the event's expiry when that is later."""
        expires = as_utc(event.expires_at)
        period_end = as_utc(subscription.current_period_end)  # type: ignore[arg-type]
        if expires is None or period_end is None or expires <= period_end:
            return False
        start = as_utc(event.period_start)
        subscription.current_period_start = (  # type: ignore[assignment]
            start if start is not None and start < expires else period_end
        )
        subscription.current_period_end = expires  # type: ignore[assignment]
        return True

    def _resolve_plan(self, event: ProviderEvent) -> tuple[Plan, BillingInterval]:
        if not event.product_id:
            raise UnknownProductError(
                f"{event.provider.value} {event.type.value} event carries no product id"
            )
        found = self.plan_repo.find_by_product(event.provider, event.product_id)
        if found is None:
            raise UnknownProductError(
                f"No plan mapped to {event.provider.value} product {event.product_id}",
                product_id=event.product_id,
            )
        return found

    def _purchased(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        if subscription is not None and subscription.is_live:
            if event.user_id is not None and event.user_id != subscription.user_id:
                raise InvalidTransitionError(
                    f"Lineage {event.lineage_ref} belongs to another user",
                    lineage=event.lineage_ref,
                )
            self._check_ordering(event, subscription)
            self._extend_period(subscription, event)
            if event.auto_renew is not None:
                subscription.cancel_at_period_end = not event.auto_renew  # type: ignore[assignment]
            if event.customer_id and subscription.provider == PaymentProvider.STRIPE.value:
                subscription.stripe_customer_id = event.customer_id  # type: ignore[assignment]
            self._record_payment(event, subscription)
            return subscription
        return self._create(event, subscription)

    def _create(self, event: ProviderEvent, previous: Subscription | None) -> Subscription:
        """Start a new lineage row and retire the user's other live subscriptions."""
        plan, interval = self._resolve_plan(event)
        user_id = event.user_id or (previous.user_id if previous is not None else None)
        if user_id is None:
            raise NotEnrolledError(
                f"{event.provider.value} lineage {event.original_transaction_id} has no user",
                lineage=event.lineage_ref,
            )
        if event.original_transaction_id is None:
            raise MalformedPayloadError("Purchase event carries no lineage key")

        now = utc_now()
        start = as_utc(event.period_start) or as_utc(event.occurred_at) or now
        end = as_utc(event.expires_at) or start + timedelta(days=INTERVAL_DAYS[interval])
        if end <= now:
            raise InvalidTransitionError(
                f"Purchase on lineage {event.lineage_ref} already expired at {end.isoformat()}"
            )

        # The user row lock serializes purchases on different lineages of one user.
        self.user_repo.get_or_create(user_id, for_update=True)
        for other in self.subscription_repo.get_live_for_user(user_id, for_update=True):
            self._retire(other, "superseded")

        lineage = event.original_transaction_id
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            provider=event.provider.value,
            status=(
                SubscriptionStatus.TRIALING.value if event.is_trial else SubscriptionStatus.ACTIVE.value
            ),
            interval=interval.value,
            lineage_key=lineage,
            current_period_start=start,
            current_period_end=end,
            trial_start=start if event.is_trial else None,
            trial_end=end if event.is_trial else None,
            cancel_at_period_end=event.auto_renew is False,
            granted_by=event.initiated_by if event.provider == PaymentProvider.MANUAL else None,
        )
        if event.provider == PaymentProvider.STRIPE:
            subscription.stripe_subscription_id = lineage  # type: ignore[assignment]
            subscription.stripe_customer_id = event.customer_id  # type: ignore[assignment]
        elif event.provider == PaymentProvider.APPLE:
            subscription.apple_original_transaction_id = lineage  # type: ignore[assignment]
        elif event.provider == PaymentProvider.GOOGLE:
            subscription.google_purchase_token = lineage  # type: ignore[assignment]
        self.subscription_repo.add(subscription)

        if self.subscription_repo.count_live_for_user(user_id) > 1:
            raise InvariantViolationError(
                f"User {user_id} has more than one live subscription", user_id=str(user_id)
            )

        self._record_payment(event, subscription, plan, interval)
        self._notify(subscription, "subscription.created")
        logger.info(
            "Created %s subscription %s for user %s on plan %s",
            subscription.status,
            subscription.id,
            user_id,
            plan.code,
        )
        return subscription

    def _retire(self, subscription: Subscription, reason: str) -> None:
        subscription.status = SubscriptionStatus.CANCELLED.value  # type: ignore[assignment]
        subscription.cancelled_at = utc_now()  # type: ignore[assignment]
        subscription.cancel_reason = reason  # type: ignore[assignment]
        self.db.flush()
        self._notify(subscription, "subscription.cancelled")
        logger.info("Retired subscription %s: %s", subscription.id, reason)

    def _renewed(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        if subscription is None:
            if event.user_id is None:
                raise NotEnrolledError(
                    f"Renewal for unknown lineage {event.lineage_ref}", lineage=event.lineage_ref
                )
            return self._create(event, None)

        if not subscription.is_live:
            # A paid renewal after expiry starts a new row; a stale one is ignored.
            last = as_utc(subscription.last_verified_at)  # type: ignore[arg-type]
            expires = as_utc(event.expires_at)
            if expires is not None and expires > utc_now() and (
                last is None or as_utc(event.occurred_at) > last  # type: ignore[operator]
            ):
                return self._create(event, subscription)
            raise InvalidTransitionError(
                f"Cannot renew a {subscription.status} subscription", status=str(subscription.status)
            )

        self._check_ordering(event, subscription)
        self._extend_period(subscription, event)
        subscription.status = (  # type: ignore[assignment]
            SubscriptionStatus.TRIALING.value if event.is_trial else SubscriptionStatus.ACTIVE.value
        )
        subscription.grace_period_end = None  # type: ignore[assignment]
        if event.auto_renew is not None:
            subscription.cancel_at_period_end = not event.auto_renew  # type: ignore[assignment]
        self._record_payment(event, subscription)
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _grace_deadline(self, event: ProviderEvent) -> datetime:
        explicit = as_utc(event.grace_period_end)
        if explicit is not None:
            return explicit
        base = as_utc(event.occurred_at) or utc_now()
        return base + timedelta(days=settings.grace_period_days)

    def _renewal_failed(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        if subscription.status not in (
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.TRIALING.value,
        ):
            raise InvalidTransitionError(
                f"Renewal failure on a {subscription.status} subscription",
                status=str(subscription.status),
            )
        subscription.status = SubscriptionStatus.PAST_DUE.value  # type: ignore[assignment]
        subscription.grace_period_end = self._grace_deadline(event)  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _grace_period_started(
        self, event: ProviderEvent, subscription: Subscription | None
    ) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        subscription.status = SubscriptionStatus.GRACE_PERIOD.value  # type: ignore[assignment]
        subscription.grace_period_end = self._grace_deadline(event)  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _grace_period_expired(
        self, event: ProviderEvent, subscription: Subscription | None
    ) -> Subscription:
        subscription = self._require(event, subscription)
        if subscription.status not in (
            SubscriptionStatus.PAST_DUE.value,
            SubscriptionStatus.GRACE_PERIOD.value,
        ):
            raise InvalidTransitionError(
                f"Grace expiry on a {subscription.status} subscription",
                status=str(subscription.status),
            )
        self._check_ordering(event, subscription)
        subscription.status = SubscriptionStatus.EXPIRED.value  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _expired(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        subscription.status = SubscriptionStatus.EXPIRED.value  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _cancelled(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        subscription.status = SubscriptionStatus.CANCELLED.value  # type: ignore[assignment]
        subscription.cancelled_at = as_utc(event.occurred_at) or utc_now()  # type: ignore[assignment]
        subscription.cancel_reason = event.reason or "cancelled"  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _refunded_or_revoked(
        self, event: ProviderEvent, subscription: Subscription | None
    ) -> Subscription:
        subscription = self._require(event, subscription)
        if subscription.status != SubscriptionStatus.CANCELLED.value:
            subscription.status = SubscriptionStatus.CANCELLED.value  # type: ignore[assignment]
            subscription.cancelled_at = as_utc(event.occurred_at) or utc_now()  # type: ignore[assignment]
            subscription.cancel_reason = event.reason or event.type.value  # type: ignore[assignment]
            self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        if event.provider in STORE_PROVIDERS:
            self.db.flush()
            self.refund_ledger.reconcile_store_refund(subscription, event)
        return subscription

    def _renewal_status_changed(
        self, event: ProviderEvent, subscription: Subscription | None
    ) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        if event.auto_renew is None:
            raise InvalidTransitionError("Renewal status change carries no auto-renew flag")
        subscription.cancel_at_period_end = not event.auto_renew  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _product_changed(
        self, event: ProviderEvent, subscription: Subscription | None
    ) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        plan, interval = self._resolve_plan(event)

        current_plan = self.plan_repo.get_by_id(subscription.plan_id)  # type: ignore[arg-type]
        is_downgrade = current_plan is not None and (
            SubscriptionTier(plan.tier).rank < SubscriptionTier(current_plan.tier).rank
        )
        subscription.plan_id = plan.id  # type: ignore[assignment]
        subscription.interval = interval.value  # type: ignore[assignment]

        expires = as_utc(event.expires_at)
        if not self._extend_period(subscription, event) and is_downgrade and expires is not None:
            # An explicit downgrade is the only change allowed to shorten the period.
            if expires > utc_now():
                subscription.current_period_end = expires  # type: ignore[assignment]
        if event.auto_renew is not None:
            subscription.cancel_at_period_end = not event.auto_renew  # type: ignore[assignment]
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    def _extended(self, event: ProviderEvent, subscription: Subscription | None) -> Subscription:
        subscription = self._require_live(event, subscription)
        self._check_ordering(event, subscription)
        if event.duration_days:
            period_end = as_utc(subscription.current_period_end)  # type: ignore[arg-type]
            subscription.current_period_end = period_end + timedelta(  # type: ignore[assignment, operator]
                days=event.duration_days
            )
        elif not self._extend_period(subscription, event):
            raise InvalidTransitionError("Extension does not move the period end forward")
        self._notify(subscription, SUBSCRIPTION_MESSAGES[event.type])
        return subscription

    # Side effects

    def _record_payment(
        self,
        event: ProviderEvent,
        subscription: Subscription,
        plan: Plan | None = None,
        interval: BillingInterval | None = None,
    ) -> Payment | None:
        """Record the charge behind a purchase or renewal and derive its invoice.

        Payments are keyed on the provider's transaction id so the same charge
        reported by two events is stored once.
        """
        if event.is_trial or not event.transaction_id:
            return None
        existing = self.payment_repo.get_by_provider_id(event.provider, event.transaction_id)
        if existing is not None:
            return existing

        if plan is None:
            plan = self.plan_repo.get_by_id(subscription.plan_id)  # type: ignore[arg-type]
        if interval is None:
            interval = BillingInterval(subscription.interval)

        amount = event.amount
        if amount is None and event.provider in STORE_PROVIDERS and plan is not None:
            price = plan.price_yearly if interval == BillingInterval.YEARLY else plan.price_monthly
            amount = Decimal(str(price))
        if amount is None or amount <= 0:
            return None

        payment = self.payment_repo.create(
            user_id=subscription.user_id,  # type: ignore[arg-type]
            subscription_id=subscription.id,  # type: ignore[arg-type]
            amount=amount,
            currency=event.currency or (str(plan.currency) if plan else settings.default_currency),
            provider=event.provider,
            status=PaymentStatus.COMPLETED,
            provider_payment_id=event.transaction_id,
        )
        self.invoice_deriver.derive_from_payment(payment, subscription, plan)
        self.outbox.enqueue(
            "payment.succeeded",
            "payment",
            payment.id,  # type: ignore[arg-type]
            {
                "payment_id": str(payment.id),
                "subscription_id": str(subscription.id),
                "amount": str(payment.amount),
                "currency": str(payment.currency),
            },
        )
        return payment

    def _propagate_tier(self, user_id: UUID) -> None:
        """Write the user's tier projection from their live subscription."""
        user = self.user_repo.get_or_create(user_id)
        live = self.subscription_repo.get_live_for_user(user_id)
        if len(live) > 1:
            raise InvariantViolationError(
                f"User {user_id} has more than one live subscription", user_id=str(user_id)
            )

        tier = SubscriptionTier.FREE
        expires_at = None
        if live:
            plan = self.plan_repo.get_by_id(live[0].plan_id)  # type: ignore[arg-type]
            if plan is not None:
                tier = SubscriptionTier(plan.tier)
            expires_at = _later(live[0].current_period_end, live[0].grace_period_end)  # type: ignore[arg-type]

        previous = user.subscription_tier
        self.user_repo.set_tier(user, tier, expires_at)
        if previous != tier.value:
            self.outbox.enqueue(
                "tier.changed",
                "user",
                user_id,
                {"user_id": str(user_id), "previous_tier": previous, "tier": tier.value},
            )
            logger.info("User %s tier %s -> %s", user_id, previous, tier.value)

    def _notify(self, subscription: Subscription, message_type: str) -> None:
        self.outbox.enqueue(
            message_type,
            "subscription",
            subscription.id,  # type: ignore[arg-type]
            {
                "subscription_id": str(subscription.id),
                "user_id": str(subscription.user_id),
                "plan_id": str(subscription.plan_id),
                "status": str(subscription.status),
                "current_period_end": str(subscription.current_period_end),
            },
        )


def synthesized_event(
    subscription: Subscription, event_type: EventType, suffix: str, reason: str | None = None
) -> ProviderEvent:
    """Build an engine event for a transition the system itself decides on."""
    return ProviderEvent(
        provider=PaymentProvider(subscription.provider),
        provider_event_id=f"system:{event_type.value}:{subscription.id}:{suffix}",
        type=event_type,
        subscription_id=subscription.id,  # type: ignore[arg-type]
        expires_at=as_utc(subscription.current_period_end),  # type: ignore[arg-type]
        occurred_at=datetime.now(UTC),
        initiated_by="system",
        reason=reason,
    )
