"""Repository for IdempotencyRecord rows (processed provider events)."""

from sqlalchemy.orm import Session

from app.models.idempotency_record import IdempotencyRecord


class IdempotencyRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, dedup_key: str) -> IdempotencyRecord | None:
        return (
            self.db.query(IdempotencyRecord)
            .filter(IdempotencyRecord.dedup_key == dedup_key)
            .first()
        )

    def count_for_key(self, dedup_key: str) -> int:
        return (
            self.db.query(IdempotencyRecord)
            .filter(IdempotencyRecord.dedup_key == dedup_key)
            .count()
        )

    def create(
        self,
        *,
        dedup_key: str,
        provider: str,
        provider_event_id: str,
        event_type: str,
        outcome: str,
        lineage_key: str | None = None,
        initiated_by: str | None = None,
    ) -> IdempotencyRecord:
        record = IdempotencyRecord(
            dedup_key=dedup_key,
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            lineage_key=lineage_key,
            outcome=outcome,
            initiated_by=initiated_by,
        )
        self.db.add(record)
        self.db.flush()
        return record
