from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.parked_event import ParkedEvent, ParkedEventStatus


class ParkedEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, parked_event_id: UUID) -> ParkedEvent | None:
        return self.db.query(ParkedEvent).filter(ParkedEvent.id == parked_event_id).first()

    def get_by_dedup_key(self, dedup_key: str) -> ParkedEvent | None:
        return self.db.query(ParkedEvent).filter(ParkedEvent.dedup_key == dedup_key).first()

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        status: ParkedEventStatus | None = None,
        error_code: str | None = None,
    ) -> list[ParkedEvent]:
        query = self.db.query(ParkedEvent)
        if status:
            query = query.filter(ParkedEvent.status == status.value)
        if error_code:
            query = query.filter(ParkedEvent.error_code == error_code)
        return query.order_by(ParkedEvent.created_at.desc()).offset(skip).limit(limit).all()

    def get_due_for_retry(self, now: datetime, max_attempts: int) -> list[ParkedEvent]:
        return (
            self.db.query(ParkedEvent)
            .filter(
                ParkedEvent.status == ParkedEventStatus.PARKED.value,
                ParkedEvent.attempts < max_attempts,
                ParkedEvent.next_attempt_at.isnot(None),
                ParkedEvent.next_attempt_at <= now,
            )
            .order_by(ParkedEvent.created_at.asc())
            .all()
        )

    def create(
        self,
        *,
        dedup_key: str,
        provider: str,
        event_type: str,
        payload: dict[str, Any],
        error_code: str,
        error_message: str | None,
        lineage_key: str | None = None,
        next_attempt_at: datetime | None = None,
    ) -> ParkedEvent:
        parked = ParkedEvent(
            dedup_key=dedup_key,
            provider=provider,
            event_type=event_type,
            lineage_key=lineage_key,
            payload=payload,
            error_code=error_code,
            error_message=error_message,
            attempts=1,
            status=ParkedEventStatus.PARKED.value,
            next_attempt_at=next_attempt_at,
        )
        self.db.add(parked)
        self.db.flush()
        return parked

    def record_failure(
        self,
        parked: ParkedEvent,
        error_code: str,
        error_message: str | None,
        next_attempt_at: datetime | None,
    ) -> ParkedEvent:
        parked.attempts = int(parked.attempts) + 1  # type: ignore[assignment]
        parked.error_code = error_code  # type: ignore[assignment]
        parked.error_message = error_message  # type: ignore[assignment]
        parked.next_attempt_at = next_attempt_at  # type: ignore[assignment]
        self.db.flush()
        return parked

    def set_status(self, parked: ParkedEvent, status: ParkedEventStatus) -> ParkedEvent:
        parked.status = status.value  # type: ignore[assignment]
        if status != ParkedEventStatus.PARKED:
            parked.resolved_at = datetime.now(UTC)  # type: ignore[assignment]
            parked.next_attempt_at = None  # type: ignore[assignment]
        self.db.flush()
        return parked
