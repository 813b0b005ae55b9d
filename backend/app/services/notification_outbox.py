"""Outbound notification outbox.

Reconciliation writes messages in the same transaction as the state change;
delivery happens later from the worker and never affects reconciliation.
"""

import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.outbound_message import OutboundMessage
from app.repositories.outbound_message_repository import OutboundMessageRepository

logger = logging.getLogger(__name__)

# Supported outbound message types
MESSAGE_TYPES = [
    "subscription.created",
    "subscription.renewed",
    "subscription.past_due",
    "subscription.grace_period",
    "subscription.expired",
    "subscription.cancelled",
    "subscription.plan_changed",
    "subscription.extended",
    "subscription.renewal_status_changed",
    "payment.succeeded",
    "payment.failed",
    "payment.disputed",
    "refund.created",
    "refund.updated",
    "invoice.created",
    "invoice.paid",
    "invoice.voided",
    "invoice.uncollectible",
    "tier.changed",
]


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a message payload.

    Args:
        payload_bytes: The raw payload bytes to sign.
        secret: The secret key for HMAC generation.

    Returns:
        Hex-encoded HMAC-SHA256 signature.
    """
    return hmac.new(
        secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()


class NotificationOutbox:
    """Queue and deliver outbound notifications."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = OutboundMessageRepository(db)

    def enqueue(
        self,
        message_type: str,
        object_type: str | None = None,
        object_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> OutboundMessage:
        """Queue a message in the current transaction."""
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown outbound message type: {message_type}")
        return self.repo.create(
            message_type=message_type,
            object_type=object_type,
            object_id=object_id,
            payload={"type": message_type, "data": payload or {}},
        )

    def deliver(self, message: OutboundMessage) -> bool:
        """POST one message to the configured notification endpoint.

        Returns:
            True if delivery succeeded, False otherwise.
        """
        payload_bytes = json.dumps(message.payload, default=str).encode("utf-8")
        signature = generate_hmac_signature(payload_bytes, settings.webhook_secret)

        headers = {
            "Content-Type": "application/json",
            "X-Subledger-Signature": signature,
            "X-Subledger-Message-Id": str(message.id),
            "X-Subledger-Message-Type": str(message.message_type),
        }

        try:
            with httpx.Client(timeout=settings.provider_timeout_seconds) as client:
                resp = client.post(
                    settings.notification_webhook_url,
                    content=payload_bytes,
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.warning("Outbound message delivery failed for %s: %s", message.id, exc)
            self.repo.mark_failed(message, response=str(exc)[:1000])
            return False

        if 200 <= resp.status_code < 300:
            self.repo.mark_succeeded(message, resp.status_code)
            return True

        self.repo.mark_failed(
            message,
            http_status=resp.status_code,
            response=resp.text[:1000] if resp.text else None,
        )
        return False

    def deliver_pending(self) -> int:
        """Deliver every pending message. Returns the number delivered."""
        if not settings.notification_webhook_url:
            return 0
        delivered = 0
        for message in self.repo.get_pending():
            if self.deliver(message):
                delivered += 1
        return delivered

    def retry_failed(self) -> int:
        """Retry failed messages with exponential backoff.

        Backoff: 2^retries minutes.

        Returns:
            Number of messages retried.
        """
        if not settings.notification_webhook_url:
            return 0

        retried_count = 0
        now = datetime.now(UTC)

        for message in self.repo.get_failed_for_retry():
            backoff_minutes = 2 ** int(message.retries)
            if message.last_retried_at:
                next_retry_at = message.last_retried_at.replace(tzinfo=UTC) + timedelta(
                    minutes=backoff_minutes
                )
                if now < next_retry_at:
                    continue

            self.repo.increment_retry(message)
            self.deliver(message)
            retried_count += 1

        return retried_count
