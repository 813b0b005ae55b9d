"""Google Play payment provider implementation.

Real-time developer notifications arrive as Pub/Sub push requests. The push
is authenticated by the OIDC token Pub/Sub attaches, and the notification
itself only names a purchase token; the subscription state is always read
back from the Play Developer API before an event is produced.
"""

import base64
import binascii
import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any
from uuid import UUID

import httpx
import jwt
from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import (
    MalformedPayloadError,
    NotFoundError,
    ProviderUnavailableError,
    VerificationError,
)
from app.core.retry import call_with_retries, raise_for_transient_status
from app.models.payment import PaymentProvider
from app.models.shared import from_millis
from app.schemas.google import (
    DeveloperNotification,
    GoogleSubscriptionPurchase,
    PubSubMessage,
    PubSubPushEnvelope,
)
from app.schemas.provider_event import EventType, ProviderEvent
from app.services.payment_provider import PaymentProviderBase, parse_user_id

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
ANDROID_PUBLISHER_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3"
ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"


class GoogleNotificationType(IntEnum):
    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13


NOTIFICATION_EVENT_TYPES: dict[int, EventType] = {
    GoogleNotificationType.RECOVERED: EventType.RENEWED,
    GoogleNotificationType.RENEWED: EventType.RENEWED,
    GoogleNotificationType.CANCELED: EventType.RENEWAL_STATUS_CHANGED,
    GoogleNotificationType.PURCHASED: EventType.PURCHASED,
    GoogleNotificationType.ON_HOLD: EventType.RENEWAL_FAILED,
    GoogleNotificationType.IN_GRACE_PERIOD: EventType.GRACE_PERIOD_STARTED,
    GoogleNotificationType.RESTARTED: EventType.RENEWAL_STATUS_CHANGED,
    GoogleNotificationType.DEFERRED: EventType.EXTENDED,
    GoogleNotificationType.REVOKED: EventType.REVOKED,
    GoogleNotificationType.EXPIRED: EventType.EXPIRED,
}

# paymentState values of purchases.subscriptions
PAYMENT_PENDING = 0
PAYMENT_FREE_TRIAL = 2


class PubSubTokenVerifier:
    """Verify the OIDC bearer token Pub/Sub sends with push requests."""

    def __init__(
        self,
        audience: str | None = None,
        service_account_email: str | None = None,
        jwk_client: Any = None,
    ):
        self.audience = audience or settings.google_pubsub_audience
        self.service_account_email = (
            service_account_email or settings.google_pubsub_service_account_email
        )
        self._jwk_client = jwk_client

    @property
    def jwk_client(self) -> Any:
        if self._jwk_client is None:
            self._jwk_client = jwt.PyJWKClient(GOOGLE_CERTS_URL)
        return self._jwk_client

    def verify(self, authorization: str | None) -> dict[str, Any]:
        if not self.audience:
            raise VerificationError("Pub/Sub push audience is not configured")
        if not authorization or not authorization.startswith("Bearer "):
            raise VerificationError("Missing Pub/Sub bearer token")
        token = authorization[len("Bearer ") :]

        try:
            signing_key = self.jwk_client.get_signing_key_from_jwt(token)
            claims: dict[str, Any] = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.audience,
                options={"require": ["exp", "iat", "iss"]},
            )
        except jwt.PyJWTError as exc:
            raise VerificationError(f"Invalid Pub/Sub token: {exc}") from exc

        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise VerificationError(f"Unexpected token issuer {claims.get('iss')}")
        if self.service_account_email:
            if claims.get("email") != self.service_account_email:
                raise VerificationError("Pub/Sub token was issued for another service account")
            if not claims.get("email_verified"):
                raise VerificationError("Pub/Sub token email is not verified")
        return claims


class GooglePlayClient:
    """Minimal Play Developer API client authenticated as a service account."""

    def __init__(
        self,
        package_name: str | None = None,
        service_account_email: str | None = None,
        private_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.package_name = package_name or settings.google_package_name
        self.service_account_email = service_account_email or settings.google_service_account_email
        self.private_key = private_key or settings.google_service_account_private_key
        self.transport = transport
        self.clock = clock
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=settings.provider_timeout_seconds, transport=self.transport)

    def _get_access_token(self) -> str:
        now = self.clock()
        if self._access_token and now < self._token_expires_at - 60:
            return self._access_token
        if not self.service_account_email or not self.private_key:
            raise ProviderUnavailableError("Google Play service account is not configured")

        assertion = jwt.encode(
            {
                "iss": self.service_account_email,
                "scope": ANDROID_PUBLISHER_SCOPE,
                "aud": GOOGLE_TOKEN_URL,
                "iat": int(now),
                "exp": int(now) + 3600,
            },
            self.private_key,
            algorithm="RS256",
        )

        def attempt() -> dict[str, Any]:
            with self._client() as client:
                response = client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": assertion,
                    },
                )
            raise_for_transient_status(response, "Google token exchange")
            if response.status_code != 200:
                raise VerificationError(
                    f"Google token exchange rejected: HTTP {response.status_code}"
                )
            body: dict[str, Any] = response.json()
            return body

        body = call_with_retries(attempt, operation="Google token exchange")
        self._access_token = body["access_token"]
        self._token_expires_at = now + int(body.get("expires_in", 3600))
        return self._access_token

    def _subscription_url(self, subscription_id: str, purchase_token: str) -> str:
        return (
            f"{ANDROID_PUBLISHER_URL}/applications/{self.package_name}"
            f"/purchases/subscriptions/{subscription_id}/tokens/{purchase_token}"
        )

    def get_subscription(
        self, subscription_id: str, purchase_token: str
    ) -> GoogleSubscriptionPurchase:
        """Fetch ``purchases.subscriptions.get`` for a purchase token."""
        token = self._get_access_token()
        url = self._subscription_url(subscription_id, purchase_token)

        def attempt() -> GoogleSubscriptionPurchase:
            with self._client() as client:
                response = client.get(url, headers={"Authorization": f"Bearer {token}"})
            raise_for_transient_status(response, "Google purchases.subscriptions.get")
            if response.status_code in (404, 410):
                raise NotFoundError(f"Google purchase token not found for {subscription_id}")
            if response.status_code != 200:
                raise VerificationError(
                    f"Play Developer API rejected request: HTTP {response.status_code}"
                )
            try:
                return GoogleSubscriptionPurchase.model_validate(response.json())
            except ValueError as exc:
                raise MalformedPayloadError(f"Unexpected Play Developer API response: {exc}") from exc

        return call_with_retries(attempt, operation="Google purchases.subscriptions.get")

    def acknowledge(self, subscription_id: str, purchase_token: str) -> None:
        """Acknowledge a purchase so Google does not refund it after three days."""
        token = self._get_access_token()
        url = f"{self._subscription_url(subscription_id, purchase_token)}:acknowledge"

        def attempt() -> None:
            with self._client() as client:
                response = client.post(url, json={}, headers={"Authorization": f"Bearer {token}"})
            raise_for_transient_status(response, "Google purchases.subscriptions.acknowledge")
            if response.status_code not in (200, 204):
                raise VerificationError(
                    f"Play Developer API rejected acknowledge: HTTP {response.status_code}"
                )

        call_with_retries(attempt, operation="Google purchases.subscriptions.acknowledge")


def _account_user_id(value: str | None) -> UUID | None:
    try:
        return parse_user_id(value)
    except MalformedPayloadError:
        logger.warning("Ignoring non-UUID obfuscatedExternalAccountId %s", value)
        return None


class GoogleProvider(PaymentProviderBase):
    """Google Play provider. Refunds are recorded pending until Google reports them."""

    def __init__(
        self,
        package_name: str | None = None,
        client: GooglePlayClient | None = None,
        token_verifier: PubSubTokenVerifier | None = None,
    ):
        self.package_name = package_name or settings.google_package_name
        self.client = client or GooglePlayClient(package_name=self.package_name)
        self.token_verifier = token_verifier or PubSubTokenVerifier()

    @property
    def provider_name(self) -> PaymentProvider:
        return PaymentProvider.GOOGLE

    def decode_push(self, payload: dict[str, Any]) -> tuple[PubSubMessage, DeveloperNotification]:
        """Unwrap the Pub/Sub envelope and decode the developer notification."""
        try:
            envelope = PubSubPushEnvelope.model_validate(payload)
            raw = base64.b64decode(envelope.message.data, validate=True)
            notification = DeveloperNotification.model_validate(json.loads(raw))
        except (ValueError, binascii.Error) as exc:
            raise MalformedPayloadError(f"Unexpected Pub/Sub push payload: {exc}") from exc

        if self.package_name and notification.package_name != self.package_name:
            raise VerificationError(
                f"Notification package {notification.package_name} does not match"
                f" {self.package_name}"
            )
        return envelope.message, notification

    def canonicalize(self, payload: dict[str, Any]) -> ProviderEvent | None:
        """Decode a push and enrich it with the purchase state from Google."""
        message, notification = self.decode_push(payload)
        sub = notification.subscription_notification
        if sub is None:
            logger.info("Ignoring Google notification without subscription data")
            return None
        if sub.notification_type not in NOTIFICATION_EVENT_TYPES:
            logger.info("Ignoring Google notification type %s", sub.notification_type)
            return None

        purchase = self.client.get_subscription(sub.subscription_id, sub.purchase_token)
        return self.canonicalize_notification(message, notification, purchase)

    def canonicalize_notification(
        self,
        message: PubSubMessage,
        notification: DeveloperNotification,
        purchase: GoogleSubscriptionPurchase,
    ) -> ProviderEvent | None:
        sub = notification.subscription_notification
        if sub is None:
            return None
        event_type = NOTIFICATION_EVENT_TYPES.get(sub.notification_type)
        if event_type is None:
            return None

        expires_at = from_millis(purchase.expiry_time_millis)
        auto_renew = purchase.auto_renewing
        if sub.notification_type == GoogleNotificationType.CANCELED:
            auto_renew = False
        elif sub.notification_type == GoogleNotificationType.RESTARTED:
            auto_renew = True

        return ProviderEvent(
            provider=PaymentProvider.GOOGLE,
            provider_event_id=message.message_id,
            type=event_type,
            original_transaction_id=sub.purchase_token,
            product_id=sub.subscription_id,
            expires_at=expires_at,
            period_start=from_millis(purchase.start_time_millis),
            is_trial=purchase.payment_state == PAYMENT_FREE_TRIAL,
            occurred_at=from_millis(notification.event_time_millis) or datetime.now(UTC),
            user_id=_account_user_id(purchase.obfuscated_external_account_id),
            transaction_id=purchase.order_id,
            grace_period_end=expires_at if event_type == EventType.GRACE_PERIOD_STARTED else None,
            auto_renew=auto_renew,
            amount=self._amount(purchase),
            currency=purchase.price_currency_code,
            initiated_by="provider",
        )

    def canonicalize_purchase(
        self,
        product_id: str,
        purchase_token: str,
        purchase: GoogleSubscriptionPurchase,
        user_id: UUID,
    ) -> ProviderEvent:
        """PURCHASED event for a purchase the app submitted for verification."""
        return ProviderEvent(
            provider=PaymentProvider.GOOGLE,
            provider_event_id=f"purchase:{purchase.order_id or purchase_token}",
            type=EventType.PURCHASED,
            original_transaction_id=purchase_token,
            product_id=product_id,
            expires_at=from_millis(purchase.expiry_time_millis),
            period_start=from_millis(purchase.start_time_millis),
            is_trial=purchase.payment_state == PAYMENT_FREE_TRIAL,
            occurred_at=datetime.now(UTC),
            user_id=user_id,
            transaction_id=purchase.order_id,
            auto_renew=purchase.auto_renewing,
            amount=self._amount(purchase),
            currency=purchase.price_currency_code,
            initiated_by=f"user:{user_id}",
        )

    @staticmethod
    def _amount(purchase: GoogleSubscriptionPurchase) -> Decimal | None:
        if purchase.price_amount_micros is None:
            return None
        return Decimal(purchase.price_amount_micros) / Decimal(1_000_000)
