"""Outbound message repository for the notification outbox."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.outbound_message import OutboundMessage


class OutboundMessageRepository:
    """Repository for OutboundMessage model."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        message_type: str,
        payload: dict[str, Any],
        object_type: str | None = None,
        object_id: UUID | None = None,
    ) -> OutboundMessage:
        """Queue a message; it commits with the caller's transaction."""
        message = OutboundMessage(
            message_type=message_type,
            object_type=object_type,
            object_id=object_id,
            payload=payload,
        )
        self.db.add(message)
        self.db.flush()
        return message

    def get_by_id(self, message_id: UUID) -> OutboundMessage | None:
        """Get a message by ID."""
        return self.db.query(OutboundMessage).filter(OutboundMessage.id == message_id).first()

    def get_by_object(self, object_id: UUID) -> list[OutboundMessage]:
        return (
            self.db.query(OutboundMessage)
            .filter(OutboundMessage.object_id == object_id)
            .order_by(OutboundMessage.created_at.asc())
            .all()
        )

    def get_pending(self) -> list[OutboundMessage]:
        """Get all pending messages."""
        return (
            self.db.query(OutboundMessage)
            .filter(OutboundMessage.status == "pending")
            .order_by(OutboundMessage.created_at.asc())
            .all()
        )

    def get_failed_for_retry(self) -> list[OutboundMessage]:
        """Get failed messages eligible for retry (retries < max_retries)."""
        return (
            self.db.query(OutboundMessage)
            .filter(
                OutboundMessage.status == "failed",
                OutboundMessage.retries < OutboundMessage.max_retries,
            )
            .order_by(OutboundMessage.created_at.asc())
            .all()
        )

    def mark_succeeded(self, message: OutboundMessage, http_status: int) -> OutboundMessage:
        message.status = "succeeded"  # type: ignore[assignment]
        message.http_status = http_status  # type: ignore[assignment]
        self.db.commit()
        return message

    def mark_failed(
        self,
        message: OutboundMessage,
        http_status: int | None = None,
        response: str | None = None,
    ) -> OutboundMessage:
        message.status = "failed"  # type: ignore[assignment]
        message.http_status = http_status  # type: ignore[assignment]
        message.response = response  # type: ignore[assignment]
        self.db.commit()
        return message

    def increment_retry(self, message: OutboundMessage) -> OutboundMessage:
        message.retries = int(message.retries) + 1  # type: ignore[assignment]
        message.last_retried_at = datetime.now(UTC)  # type: ignore[assignment]
        self.db.commit()
        return message
