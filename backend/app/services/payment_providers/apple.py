"""Apple App Store payment provider implementation.

Two inputs reach this adapter:

1. Receipts submitted by the app, validated with the legacy ``verifyReceipt``
   endpoint. Production is always tried first; a sandbox receipt answers
   21007 and is re-sent to the sandbox endpoint.
2. App Store Server Notifications V2, a JWS ``signedPayload`` whose
   transaction and renewal info are themselves JWS tokens. All three are
   verified against Apple's certificate chain before any field is read.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import httpx
from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import (
    APPLE_RETRYABLE_STATUSES,
    MalformedPayloadError,
    NotFoundError,
    ProviderUnavailableError,
    ReceiptError,
    VerificationError,
)
from app.core.jws import AppleJWSVerifier, load_root_certificates
from app.core.retry import call_with_retries, raise_for_transient_status
from app.models.payment import PaymentProvider
from app.models.shared import from_millis
from app.schemas.apple import (
    AppleNotificationPayload,
    AppleReceiptResponse,
    AppleReceiptTransaction,
    AppleRenewalInfo,
    AppleTransactionInfo,
    AppleWebhookBody,
)
from app.schemas.provider_event import EventType, ProviderEvent
from app.services.payment_provider import PaymentProviderBase, parse_user_id

logger = logging.getLogger(__name__)

PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

SANDBOX_RECEIPT_STATUS = 21007


class AppleNotificationType(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    EXPIRED = "EXPIRED"
    REFUND = "REFUND"
    REVOKE = "REVOKE"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"


NOTIFICATION_EVENT_TYPES: dict[str, EventType] = {
    AppleNotificationType.SUBSCRIBED: EventType.PURCHASED,
    AppleNotificationType.DID_RENEW: EventType.RENEWED,
    AppleNotificationType.DID_FAIL_TO_RENEW: EventType.RENEWAL_FAILED,
    AppleNotificationType.GRACE_PERIOD_EXPIRED: EventType.GRACE_PERIOD_EXPIRED,
    AppleNotificationType.EXPIRED: EventType.EXPIRED,
    AppleNotificationType.REFUND: EventType.REFUNDED,
    AppleNotificationType.REVOKE: EventType.REVOKED,
    AppleNotificationType.DID_CHANGE_RENEWAL_STATUS: EventType.RENEWAL_STATUS_CHANGED,
    AppleNotificationType.DID_CHANGE_RENEWAL_PREF: EventType.PRODUCT_CHANGED,
    AppleNotificationType.RENEWAL_EXTENDED: EventType.EXTENDED,
}


def _expiry_ms(transaction: AppleReceiptTransaction) -> int:
    return int(transaction.expires_date_ms or 0)


class AppleProvider(PaymentProviderBase):
    """Apple App Store provider.

    Refunds are initiated by the customer with Apple, so ``create_refund``
    keeps the base behaviour and records them as pending.
    """

    def __init__(
        self,
        shared_secret: str | None = None,
        bundle_id: str | None = None,
        verifier: AppleJWSVerifier | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.shared_secret = shared_secret or settings.apple_shared_secret
        self.bundle_id = bundle_id or settings.apple_bundle_id
        self._verifier = verifier
        self.transport = transport

    @property
    def provider_name(self) -> PaymentProvider:
        return PaymentProvider.APPLE

    @property
    def verifier(self) -> AppleJWSVerifier:
        if self._verifier is None:
            self._verifier = AppleJWSVerifier(
                load_root_certificates(settings.apple_root_certificates)
            )
        return self._verifier

    # Receipt validation

    def _post_receipt(self, url: str, receipt_data: str) -> AppleReceiptResponse:
        body = {
            "receipt-data": receipt_data,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }

        def attempt() -> AppleReceiptResponse:
            with httpx.Client(
                timeout=settings.provider_timeout_seconds, transport=self.transport
            ) as client:
                response = client.post(url, json=body)
            raise_for_transient_status(response, "Apple verifyReceipt")
            try:
                parsed = AppleReceiptResponse.model_validate(response.json())
            except ValueError as exc:
                raise MalformedPayloadError(f"Unexpected verifyReceipt response: {exc}") from exc
            if parsed.status in APPLE_RETRYABLE_STATUSES:
                raise ProviderUnavailableError(
                    f"verifyReceipt returned transient status {parsed.status}",
                    status=parsed.status,
                )
            return parsed

        return call_with_retries(attempt, operation="Apple verifyReceipt")

    def verify_receipt(self, receipt_data: str) -> AppleReceiptResponse:
        """Validate a base64 receipt, falling back to sandbox on 21007."""
        response = self._post_receipt(PRODUCTION_VERIFY_URL, receipt_data)
        if response.status == SANDBOX_RECEIPT_STATUS:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            response = self._post_receipt(SANDBOX_VERIFY_URL, receipt_data)
        if response.status != 0:
            raise ReceiptError(response.status)
        return response

    def _receipt_event(
        self,
        receipt: AppleReceiptResponse,
        transaction: AppleReceiptTransaction,
        user_id: UUID,
    ) -> ProviderEvent:
        return ProviderEvent(
            provider=PaymentProvider.APPLE,
            provider_event_id=f"receipt:{transaction.transaction_id}",
            type=EventType.PURCHASED,
            original_transaction_id=transaction.original_transaction_id,
            product_id=transaction.product_id,
            expires_at=from_millis(transaction.expires_date_ms),
            period_start=from_millis(transaction.purchase_date_ms),
            is_trial=transaction.is_trial_period == "true",
            occurred_at=datetime.now(UTC),
            user_id=user_id,
            transaction_id=transaction.transaction_id,
            initiated_by=f"user:{user_id}",
            environment=receipt.environment,
        )

    def canonicalize_receipt(
        self, receipt: AppleReceiptResponse, product_id: str, user_id: UUID
    ) -> ProviderEvent:
        """Build a PURCHASED event from the latest transaction for ``product_id``."""
        candidates = [t for t in receipt.latest_receipt_info if t.product_id == product_id]
        if not candidates:
            raise NotFoundError(f"Receipt has no transaction for product {product_id}")
        latest = max(candidates, key=_expiry_ms)
        return self._receipt_event(receipt, latest, user_id)

    def canonicalize_restore(self, receipt: AppleReceiptResponse, user_id: UUID) -> ProviderEvent:
        """Pick the unexpired transaction with the latest expiry."""
        now_ms = int(datetime.now(UTC).timestamp() * 1000)
        active = [
            t
            for t in receipt.latest_receipt_info
            if _expiry_ms(t) > now_ms and not t.cancellation_date_ms
        ]
        if not active:
            raise NotFoundError("Receipt has no active subscription to restore")
        latest = max(active, key=_expiry_ms)
        return self._receipt_event(receipt, latest, user_id)

    # Server notifications V2

    def decode_notification(
        self, signed_payload: str
    ) -> tuple[AppleNotificationPayload, AppleTransactionInfo | None, AppleRenewalInfo | None]:
        """Verify the outer and nested JWS tokens and parse them."""
        try:
            notification = AppleNotificationPayload.model_validate(
                self.verifier.verify(signed_payload)
            )
            data = notification.data
            if data is None:
                return notification, None, None

            if self.bundle_id and data.bundle_id != self.bundle_id:
                raise VerificationError(
                    f"Notification bundle id {data.bundle_id} does not match {self.bundle_id}"
                )

            transaction = None
            if data.signed_transaction_info:
                transaction = AppleTransactionInfo.model_validate(
                    self.verifier.verify(data.signed_transaction_info)
                )
            renewal = None
            if data.signed_renewal_info:
                renewal = AppleRenewalInfo.model_validate(
                    self.verifier.verify(data.signed_renewal_info)
                )
        except ValidationError as exc:
            raise MalformedPayloadError(f"Unexpected Apple notification: {exc}") from exc
        return notification, transaction, renewal

    def canonicalize(self, payload: dict[str, Any]) -> ProviderEvent | None:
        """Parse an App Store Server Notification V2 body."""
        try:
            body = AppleWebhookBody.model_validate(payload)
        except ValidationError as exc:
            raise MalformedPayloadError("Apple notification has no signedPayload") from exc

        notification, transaction, renewal = self.decode_notification(body.signed_payload)

        event_type = NOTIFICATION_EVENT_TYPES.get(notification.notification_type)
        if event_type is None:
            logger.info("Ignoring Apple notification type %s", notification.notification_type)
            return None
        if transaction is None:
            raise MalformedPayloadError(
                f"Apple {notification.notification_type} notification has no transaction info"
            )

        grace_period_end = None
        if event_type == EventType.RENEWAL_FAILED and notification.subtype == "GRACE_PERIOD":
            event_type = EventType.GRACE_PERIOD_STARTED
            if renewal is not None:
                grace_period_end = from_millis(renewal.grace_period_expires_date)

        product_id = transaction.product_id
        if event_type == EventType.PRODUCT_CHANGED and renewal and renewal.auto_renew_product_id:
            product_id = renewal.auto_renew_product_id

        auto_renew = None
        if renewal is not None and renewal.auto_renew_status is not None:
            auto_renew = renewal.auto_renew_status == 1
        if notification.subtype == "AUTO_RENEW_DISABLED":
            auto_renew = False
        elif notification.subtype == "AUTO_RENEW_ENABLED":
            auto_renew = True

        amount = None
        if transaction.price is not None:
            amount = Decimal(transaction.price) / Decimal(1000)

        return ProviderEvent(
            provider=PaymentProvider.APPLE,
            provider_event_id=notification.notification_uuid,
            type=event_type,
            original_transaction_id=transaction.original_transaction_id,
            product_id=product_id,
            expires_at=from_millis(transaction.expires_date),
            period_start=from_millis(transaction.purchase_date),
            is_trial=transaction.offer_discount_type == "FREE_TRIAL",
            occurred_at=from_millis(notification.signed_date) or datetime.now(UTC),
            user_id=parse_user_id(transaction.app_account_token),
            transaction_id=transaction.transaction_id,
            grace_period_end=grace_period_end,
            auto_renew=auto_renew,
            amount=amount,
            currency=transaction.currency,
            initiated_by="provider",
            environment=notification.data.environment if notification.data else None,
        )
