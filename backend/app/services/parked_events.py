"""Parked (dead-lettered) events: inspection, replay and scheduled retry."""

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import InvalidTransitionError, NotFoundError, ReconciliationError
from app.core.retry import backoff_delay
from app.models.parked_event import ParkedEvent, ParkedEventStatus
from app.models.payment import PaymentProvider
from app.models.shared import utc_now
from app.repositories.parked_event_repository import ParkedEventRepository
from app.schemas.provider_event import ProviderEvent
from app.services.payment_provider import PaymentProviderBase, get_payment_provider
from app.services.reconciliation import (
    PARKED_RETRY_BASE_SECONDS,
    ApplyOutcome,
    ApplyResult,
    ReconciliationEngine,
)

logger = logging.getLogger(__name__)

# event_type of a parked row holding a raw provider payload that was never canonicalized.
UNRESOLVED_EVENT_TYPE = "unresolved"


class ParkedEventService:
    def __init__(
        self,
        db: Session,
        engine: ReconciliationEngine | None = None,
        provider_factory: Callable[[PaymentProvider], PaymentProviderBase] = get_payment_provider,
    ):
        self.db = db
        self.repo = ParkedEventRepository(db)
        self.engine = engine or ReconciliationEngine(db)
        self.provider_factory = provider_factory

    def list_parked(
        self,
        skip: int = 0,
        limit: int = 100,
        status: ParkedEventStatus | None = None,
        error_code: str | None = None,
    ) -> list[ParkedEvent]:
        return self.repo.get_all(skip=skip, limit=limit, status=status, error_code=error_code)

    def get(self, parked_event_id: UUID) -> ParkedEvent:
        parked = self.repo.get_by_id(parked_event_id)
        if parked is None:
            raise NotFoundError(
                f"Parked event {parked_event_id} not found", parked_event_id=str(parked_event_id)
            )
        return parked

    def park_raw(
        self,
        provider: PaymentProvider,
        provider_event_id: str,
        payload: dict[str, Any],
        exc: ReconciliationError,
    ) -> ParkedEvent:
        """Park a provider payload that could not be turned into an event yet,
        e.g. because the provider API needed to enrich it was unavailable."""
        dedup_key = f"{provider.value}:{provider_event_id}"
        existing = self.repo.get_by_dedup_key(dedup_key)
        attempts = int(existing.attempts) + 1 if existing is not None else 1
        next_attempt_at = utc_now() + timedelta(
            seconds=backoff_delay(attempts, PARKED_RETRY_BASE_SECONDS)
        )
        if existing is not None:
            parked = self.repo.record_failure(existing, exc.code, exc.message, next_attempt_at)
        else:
            parked = self.repo.create(
                dedup_key=dedup_key,
                provider=provider.value,
                event_type=UNRESOLVED_EVENT_TYPE,
                payload={"raw": payload},
                error_code=exc.code,
                error_message=exc.message,
                next_attempt_at=next_attempt_at,
            )
        self.db.commit()
        logger.warning("Parked raw %s payload %s: %s", provider.value, dedup_key, exc.message)
        return parked

    def replay(self, parked_event_id: UUID) -> ApplyResult:
        """Run a parked event through the engine again."""
        parked = self.get(parked_event_id)
        if parked.status != ParkedEventStatus.PARKED.value:
            raise InvalidTransitionError(
                f"Parked event {parked_event_id} is {parked.status}", status=str(parked.status)
            )
        try:
            event = self._to_event(parked)
        except ReconciliationError as exc:
            self._record_failure(parked, exc)
            raise

        if event is None:
            self.repo.set_status(parked, ParkedEventStatus.RESOLVED)
            self.db.commit()
            return ApplyResult(ApplyOutcome.IGNORED, detail="Payload carries no subscription effect")

        try:
            result = self.engine.apply(event)
        except ReconciliationError as exc:
            self._record_failure(parked, exc)
            raise

        if result.outcome in (ApplyOutcome.DUPLICATE, ApplyOutcome.IGNORED):
            self.db.refresh(parked)
            if parked.status == ParkedEventStatus.PARKED.value:
                self.repo.set_status(parked, ParkedEventStatus.RESOLVED)
                self.db.commit()
        return result

    def discard(self, parked_event_id: UUID) -> ParkedEvent:
        parked = self.get(parked_event_id)
        if parked.status != ParkedEventStatus.PARKED.value:
            raise InvalidTransitionError(
                f"Parked event {parked_event_id} is {parked.status}", status=str(parked.status)
            )
        self.repo.set_status(parked, ParkedEventStatus.DISCARDED)
        self.db.commit()
        self.db.refresh(parked)
        logger.info("Discarded parked event %s", parked.dedup_key)
        return parked

    def retry_due(self) -> int:
        """Replay parked events whose backoff has elapsed. Returns how many applied."""
        applied = 0
        due = self.repo.get_due_for_retry(utc_now(), settings.parked_event_max_attempts)
        for parked in due:
            try:
                result = self.replay(parked.id)  # type: ignore[arg-type]
            except ReconciliationError as exc:
                logger.warning("Retry of parked event %s failed: %s", parked.dedup_key, exc.message)
                continue
            if result.outcome == ApplyOutcome.APPLIED:
                applied += 1
        return applied

    def _to_event(self, parked: ParkedEvent) -> ProviderEvent | None:
        payload: dict[str, Any] = dict(parked.payload)  # type: ignore[arg-type]
        if parked.event_type == UNRESOLVED_EVENT_TYPE:
            provider = self.provider_factory(PaymentProvider(parked.provider))
            return provider.canonicalize(payload["raw"])
        return ProviderEvent.model_validate(payload)

    def _record_failure(self, parked: ParkedEvent, exc: ReconciliationError) -> None:
        self.db.rollback()
        self.db.refresh(parked)
        attempts = int(parked.attempts) + 1
        next_attempt_at = utc_now() + timedelta(
            seconds=backoff_delay(attempts, PARKED_RETRY_BASE_SECONDS)
        )
        self.repo.record_failure(parked, exc.code, exc.message, next_attempt_at)
        self.db.commit()
