"""Tests for the Google Play adapter."""

import base64
import json
import time
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.core.errors import (
    MalformedPayloadError,
    NotFoundError,
    ProviderUnavailableError,
    VerificationError,
)
from app.schemas.google import DeveloperNotification, GoogleSubscriptionPurchase, PubSubMessage
from app.schemas.provider_event import EventType
from app.services.payment_providers.google import (
    GOOGLE_TOKEN_URL,
    GoogleNotificationType,
    GooglePlayClient,
    GoogleProvider,
    PubSubTokenVerifier,
)
from tests.conftest import to_millis

AUDIENCE = "https://billing.example.com/webhooks/google"
PUSH_ACCOUNT = "pubsub-push@example.iam.gserviceaccount.com"


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class StaticJWKClient:
    """Returns one fixed signing key instead of fetching Google's certs."""

    def __init__(self, public_key):
        self.public_key = public_key

    def get_signing_key_from_jwt(self, token):
        return SimpleNamespace(key=self.public_key)


def oidc_token(key, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": AUDIENCE,
        "email": PUSH_ACCOUNT,
        "email_verified": True,
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256")


class TestPubSubTokenVerifier:
    @pytest.fixture
    def verifier(self, rsa_key):
        return PubSubTokenVerifier(
            audience=AUDIENCE,
            service_account_email=PUSH_ACCOUNT,
            jwk_client=StaticJWKClient(rsa_key.public_key()),
        )

    def test_valid_token(self, verifier, rsa_key):
        claims = verifier.verify(f"Bearer {oidc_token(rsa_key)}")
        assert claims["email"] == PUSH_ACCOUNT

    def test_wrong_audience(self, verifier, rsa_key):
        with pytest.raises(VerificationError):
            verifier.verify(f"Bearer {oidc_token(rsa_key, aud='https://elsewhere.example.com')}")

    def test_expired_token(self, verifier, rsa_key):
        stale = int(time.time()) - 7200
        with pytest.raises(VerificationError):
            verifier.verify(f"Bearer {oidc_token(rsa_key, iat=stale, exp=stale + 60)}")

    def test_wrong_issuer(self, verifier, rsa_key):
        with pytest.raises(VerificationError, match="issuer"):
            verifier.verify(f"Bearer {oidc_token(rsa_key, iss='https://evil.example.com')}")

    def test_other_service_account(self, verifier, rsa_key):
        with pytest.raises(VerificationError, match="another service account"):
            verifier.verify(f"Bearer {oidc_token(rsa_key, email='other@example.com')}")

    def test_unverified_email(self, verifier, rsa_key):
        with pytest.raises(VerificationError, match="not verified"):
            verifier.verify(f"Bearer {oidc_token(rsa_key, email_verified=False)}")

    def test_signed_by_other_key(self, verifier):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(VerificationError):
            verifier.verify(f"Bearer {oidc_token(other)}")

    def test_missing_header(self, verifier):
        with pytest.raises(VerificationError, match="bearer token"):
            verifier.verify(None)
        with pytest.raises(VerificationError, match="bearer token"):
            verifier.verify("Basic abc")

    def test_unconfigured_audience(self, rsa_key):
        verifier = PubSubTokenVerifier(audience="", jwk_client=StaticJWKClient(rsa_key.public_key()))
        with pytest.raises(VerificationError, match="not configured"):
            verifier.verify(f"Bearer {oidc_token(rsa_key)}")


class TestGooglePlayClient:
    @pytest.fixture
    def private_key_pem(self, rsa_key):
        return rsa_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()

    def test_token_exchange_is_cached(self, private_key_pem, rsa_key):
        """The service-account token is fetched once and reused."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_TOKEN_URL:
                form = parse_qs(request.content.decode())
                assertion = form["assertion"][0]
                claims = jwt.decode(
                    assertion, rsa_key.public_key(), algorithms=["RS256"], audience=GOOGLE_TOKEN_URL
                )
                assert claims["iss"] == "play@example.iam.gserviceaccount.com"
                return httpx.Response(200, json={"access_token": "ya29.token", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer ya29.token"
            return httpx.Response(200, json={"orderId": "GPA.1", "paymentState": 1})

        client = GooglePlayClient(
            package_name="com.example.app",
            service_account_email="play@example.iam.gserviceaccount.com",
            private_key=private_key_pem,
            transport=httpx.MockTransport(handler),
        )
        first = client.get_subscription("premium_monthly", "token-1")
        client.get_subscription("premium_monthly", "token-2")

        assert first.order_id == "GPA.1"
        token_requests = [r for r in requests if str(r.url) == GOOGLE_TOKEN_URL]
        assert len(token_requests) == 1
        assert requests[1].url.path == (
            "/androidpublisher/v3/applications/com.example.app"
            "/purchases/subscriptions/premium_monthly/tokens/token-1"
        )

    def test_missing_service_account(self):
        client = GooglePlayClient(package_name="com.example.app")
        with pytest.raises(ProviderUnavailableError):
            client.get_subscription("premium_monthly", "token-1")

    def _client(self, handler) -> GooglePlayClient:
        client = GooglePlayClient(package_name="com.example.app", transport=httpx.MockTransport(handler))
        client._access_token = "cached"
        client._token_expires_at = float("inf")
        return client

    def test_unknown_token(self):
        client = self._client(lambda request: httpx.Response(410))
        with pytest.raises(NotFoundError):
            client.get_subscription("premium_monthly", "gone")

    def test_forbidden(self):
        client = self._client(lambda request: httpx.Response(403))
        with pytest.raises(VerificationError):
            client.get_subscription("premium_monthly", "token-1")

    def test_acknowledge(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            return httpx.Response(204)

        self._client(handler).acknowledge("premium_monthly", "token-1")
        assert seen == [
            (
                "POST",
                "/androidpublisher/v3/applications/com.example.app"
                "/purchases/subscriptions/premium_monthly/tokens/token-1:acknowledge",
            )
        ]


def _push(notification: dict, message_id: str = "msg-9") -> dict:
    data = base64.b64encode(json.dumps(notification).encode()).decode()
    return {"message": {"data": data, "messageId": message_id}}


class TestGoogleProvider:
    @pytest.fixture
    def provider(self):
        client = GooglePlayClient(package_name="com.example.app")
        return GoogleProvider(package_name="com.example.app", client=client)

    @staticmethod
    def notification(notification_type: int) -> DeveloperNotification:
        return DeveloperNotification.model_validate(
            {
                "packageName": "com.example.app",
                "eventTimeMillis": str(to_millis(datetime.now(UTC).replace(microsecond=0))),
                "subscriptionNotification": {
                    "notificationType": notification_type,
                    "purchaseToken": "token-xyz",
                    "subscriptionId": "premium_monthly",
                },
            }
        )

    @staticmethod
    def purchase(**overrides) -> GoogleSubscriptionPurchase:
        now = datetime.now(UTC).replace(microsecond=0)
        data = {
            "orderId": "GPA.9",
            "startTimeMillis": str(to_millis(now)),
            "expiryTimeMillis": str(to_millis(now + timedelta(days=30))),
            "autoRenewing": True,
            "priceCurrencyCode": "EUR",
            "priceAmountMicros": "4990000",
            "paymentState": 1,
        }
        data.update(overrides)
        return GoogleSubscriptionPurchase.model_validate(data)

    def test_decode_push(self, provider):
        message, notification = provider.decode_push(
            _push(
                {
                    "packageName": "com.example.app",
                    "eventTimeMillis": "1700000000000",
                    "testNotification": {"version": "1.0"},
                }
            )
        )
        assert message.message_id == "msg-9"
        assert notification.subscription_notification is None

    def test_decode_push_bad_data(self, provider):
        with pytest.raises(MalformedPayloadError):
            provider.decode_push({"message": {"data": "%%%not-base64", "messageId": "1"}})
        with pytest.raises(MalformedPayloadError):
            provider.decode_push({"unexpected": True})

    def test_test_notification_is_ignored(self, provider):
        body = _push({"packageName": "com.example.app", "eventTimeMillis": "1700000000000"})
        assert provider.canonicalize(body) is None

    def test_renewal_mapping(self, provider, user_id):
        purchase = self.purchase(obfuscatedExternalAccountId=str(user_id))
        event = provider.canonicalize_notification(
            PubSubMessage(data="", message_id="msg-1"),
            self.notification(GoogleNotificationType.RENEWED),
            purchase,
        )
        assert event.type == EventType.RENEWED
        assert event.provider_event_id == "msg-1"
        assert event.original_transaction_id == "token-xyz"
        assert event.product_id == "premium_monthly"
        assert event.transaction_id == "GPA.9"
        assert event.amount == Decimal("4.99")
        assert event.currency == "EUR"
        assert event.user_id == user_id
        assert event.auto_renew is True

    def test_cancel_turns_off_auto_renew(self, provider):
        event = provider.canonicalize_notification(
            PubSubMessage(data="", message_id="msg-2"),
            self.notification(GoogleNotificationType.CANCELED),
            self.purchase(),
        )
        assert event.type == EventType.RENEWAL_STATUS_CHANGED
        assert event.auto_renew is False

    def test_grace_period_ends_at_expiry(self, provider):
        purchase = self.purchase()
        event = provider.canonicalize_notification(
            PubSubMessage(data="", message_id="msg-3"),
            self.notification(GoogleNotificationType.IN_GRACE_PERIOD),
            purchase,
        )
        assert event.type == EventType.GRACE_PERIOD_STARTED
        assert event.grace_period_end == event.expires_at

    def test_free_trial(self, provider):
        event = provider.canonicalize_notification(
            PubSubMessage(data="", message_id="msg-4"),
            self.notification(GoogleNotificationType.PURCHASED),
            self.purchase(paymentState=2),
        )
        assert event.is_trial is True

    def test_non_uuid_account_id_is_dropped(self, provider):
        event = provider.canonicalize_notification(
            PubSubMessage(data="", message_id="msg-5"),
            self.notification(GoogleNotificationType.PURCHASED),
            self.purchase(obfuscatedExternalAccountId="customer-42"),
        )
        assert event.user_id is None

    def test_canonicalize_purchase(self, provider, user_id):
        event = provider.canonicalize_purchase("premium_monthly", "token-abc", self.purchase(), user_id)
        assert event.type == EventType.PURCHASED
        assert event.provider_event_id == "purchase:GPA.9"
        assert event.user_id == user_id
        assert event.initiated_by == f"user:{user_id}"
