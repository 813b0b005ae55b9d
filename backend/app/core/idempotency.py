"""Idempotency gate for provider events.

Providers deliver at least once. The gate turns that into at-most-once effect:

1. ``is_processed`` answers whether the event's dedup key already has a
   record; callers return success immediately when it does.
2. ``record`` inserts the record *inside the caller's transaction*, next to
   the state changes it guards. A crash before commit loses both (the
   provider retries safely); after commit both are durable.
3. Two concurrent deliveries of the same event race on the unique
   ``dedup_key``; the loser's commit raises ``IntegrityError`` and is
   reported as a duplicate by ``is_duplicate_race``.

Admin actions reuse the same gate with a key taken from the
``Idempotency-Key`` request header when one is sent.
"""

import uuid

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.idempotency_record import IdempotencyRecord
from app.repositories.idempotency_repository import IdempotencyRepository
from app.schemas.provider_event import ProviderEvent


class IdempotencyGate:
    def __init__(self, db: Session):
        self.db = db
        self.repo = IdempotencyRepository(db)

    def is_processed(self, event: ProviderEvent) -> bool:
        return self.repo.get_by_key(event.dedup_key) is not None

    def get_record(self, event: ProviderEvent) -> IdempotencyRecord | None:
        return self.repo.get_by_key(event.dedup_key)

    def record(self, event: ProviderEvent, outcome: str) -> IdempotencyRecord:
        return self.repo.create(
            dedup_key=event.dedup_key,
            provider=event.provider.value,
            provider_event_id=event.provider_event_id,
            event_type=event.type.value,
            lineage_key=event.lineage_ref,
            outcome=outcome,
            initiated_by=event.initiated_by,
        )

    @staticmethod
    def is_duplicate_race(exc: IntegrityError) -> bool:
        """True when an insert lost the race on ``idempotency_records.dedup_key``."""
        message = str(exc.orig).lower()
        return "idempotency_records" in message or "dedup_key" in message


def admin_event_id(request: Request) -> str:
    """Event id for an admin action: the ``Idempotency-Key`` header or a fresh UUID."""
    key = request.headers.get("Idempotency-Key")
    if key:
        return f"admin:{key}"
    return f"admin:{uuid.uuid4()}"
