"""Tests for client-submitted purchase verification."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from app.core.errors import NotFoundError
from app.models.purchase_verification import PurchaseVerification
from app.models.subscription import Subscription
from app.routers.webhooks import get_apple_provider, get_google_provider
from app.schemas.google import GoogleSubscriptionPurchase
from app.services.payment_providers.apple import AppleProvider
from app.services.payment_providers.google import GooglePlayClient, GoogleProvider
from tests.conftest import to_millis


def receipt(*transactions: dict, status: int = 0) -> dict:
    return {
        "status": status,
        "environment": "Sandbox",
        "latest_receipt_info": list(transactions),
    }


def receipt_transaction(expires_in: timedelta = timedelta(days=30), **overrides) -> dict:
    now = datetime.now(UTC)
    transaction = {
        "original_transaction_id": "7000",
        "transaction_id": "7001",
        "product_id": "com.example.premium.monthly",
        "purchase_date_ms": str(to_millis(now)),
        "expires_date_ms": str(to_millis(now + expires_in)),
        "is_trial_period": "false",
    }
    transaction.update(overrides)
    return transaction


def apple_answering(body: dict) -> AppleProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    return AppleProvider(shared_secret="shared", transport=httpx.MockTransport(handler))


def google_purchase(**overrides) -> GoogleSubscriptionPurchase:
    now = datetime.now(UTC)
    fields = {
        "orderId": "GPA.1234-5678",
        "startTimeMillis": str(to_millis(now)),
        "expiryTimeMillis": str(to_millis(now + timedelta(days=30))),
        "autoRenewing": True,
        "priceCurrencyCode": "EUR",
        "priceAmountMicros": "9990000",
        "paymentState": 1,
        "acknowledgementState": 0,
    }
    fields.update(overrides)
    return GoogleSubscriptionPurchase.model_validate(fields)


def google_returning(purchase=None, error=None) -> tuple[GoogleProvider, MagicMock]:
    play = MagicMock(spec=GooglePlayClient)
    if error is not None:
        play.get_subscription.side_effect = error
    else:
        play.get_subscription.return_value = purchase
    return GoogleProvider(package_name="com.example.app", client=play), play


def audit_rows(db_session) -> list[PurchaseVerification]:
    db_session.expire_all()
    return db_session.query(PurchaseVerification).all()


class TestApplePurchase:
    def test_verified_purchase(self, client, db_session, premium_plan, user_id):
        provider = apple_answering(receipt(receipt_transaction()))
        client.app.dependency_overrides[get_apple_provider] = lambda: provider

        response = client.post(
            "/v1/purchases/apple",
            json={
                "user_id": str(user_id),
                "receipt_data": "base64receipt",
                "product_id": "com.example.premium.monthly",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "active"
        assert body["is_trial"] is False
        sub = db_session.query(Subscription).one()
        assert str(sub.id) == body["subscription_id"]
        assert sub.apple_original_transaction_id == "7000"

        (audit,) = audit_rows(db_session)
        assert audit.success is True
        assert audit.transaction_id == "7001"
        assert audit.environment == "Sandbox"

    def test_rejected_receipt(self, client, db_session, premium_plan, user_id):
        provider = apple_answering(receipt(status=21003))
        client.app.dependency_overrides[get_apple_provider] = lambda: provider

        response = client.post(
            "/v1/purchases/apple",
            json={
                "user_id": str(user_id),
                "receipt_data": "bogus",
                "product_id": "com.example.premium.monthly",
            },
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        (audit,) = audit_rows(db_session)
        assert audit.success is False
        assert audit.reason

    def test_expired_purchase(self, client, db_session, premium_plan, user_id):
        provider = apple_answering(receipt(receipt_transaction(expires_in=timedelta(days=-1))))
        client.app.dependency_overrides[get_apple_provider] = lambda: provider

        response = client.post(
            "/v1/purchases/apple",
            json={
                "user_id": str(user_id),
                "receipt_data": "base64receipt",
                "product_id": "com.example.premium.monthly",
            },
        )

        assert response.json() == {
            "success": False,
            "reason": "Subscription has expired",
            "subscription_id": None,
            "status": None,
            "expires_at": None,
            "is_trial": False,
        }
        assert db_session.query(Subscription).count() == 0

    def test_unmapped_product_is_parked(self, client, db_session, user_id):
        provider = apple_answering(receipt(receipt_transaction()))
        client.app.dependency_overrides[get_apple_provider] = lambda: provider

        response = client.post(
            "/v1/purchases/apple",
            json={
                "user_id": str(user_id),
                "receipt_data": "base64receipt",
                "product_id": "com.example.premium.monthly",
            },
        )

        assert response.json()["success"] is False
        assert db_session.query(Subscription).count() == 0

    def test_purchase_of_another_account(self, client, db_session, premium_plan, user_id):
        provider = apple_answering(receipt(receipt_transaction()))
        client.app.dependency_overrides[get_apple_provider] = lambda: provider
        body = {
            "receipt_data": "base64receipt",
            "product_id": "com.example.premium.monthly",
        }

        first = client.post("/v1/purchases/apple", json={**body, "user_id": str(user_id)})
        assert first.json()["success"] is True

        other = client.post("/v1/purchases/apple", json={**body, "user_id": str(uuid.uuid4())})
        assert other.json() == {
            "success": False,
            "reason": "Purchase belongs to another account",
            "subscription_id": None,
            "status": None,
            "expires_at": None,
            "is_trial": False,
        }

    def test_restore(self, client, db_session, premium_plan, user_id):
        provider = apple_answering(
            receipt(
                receipt_transaction(
                    transaction_id="7001", expires_in=timedelta(days=-3)
                ),
                receipt_transaction(transaction_id="7002"),
            )
        )
        client.app.dependency_overrides[get_apple_provider] = lambda: provider

        response = client.post(
            "/v1/purchases/apple/restore",
            json={"user_id": str(user_id), "receipt_data": "base64receipt"},
        )

        assert response.json()["success"] is True
        (audit,) = audit_rows(db_session)
        assert audit.transaction_id == "7002"

    def test_validation_error(self, client, user_id):
        response = client.post(
            "/v1/purchases/apple",
            json={"user_id": str(user_id), "receipt_data": "", "product_id": "x"},
        )
        assert response.status_code == 422


class TestGooglePurchase:
    @pytest.fixture
    def body(self, user_id) -> dict:
        return {
            "user_id": str(user_id),
            "product_id": "premium_monthly",
            "purchase_token": "token-abc",
        }

    def test_verified_and_acknowledged(self, client, db_session, premium_plan, body):
        provider, play = google_returning(google_purchase())
        client.app.dependency_overrides[get_google_provider] = lambda: provider

        response = client.post("/v1/purchases/google", json=body)

        assert response.status_code == 200
        assert response.json()["success"] is True
        play.get_subscription.assert_called_once_with("premium_monthly", "token-abc")
        play.acknowledge.assert_called_once_with("premium_monthly", "token-abc")
        sub = db_session.query(Subscription).one()
        assert sub.google_purchase_token == "token-abc"

    def test_already_acknowledged(self, client, premium_plan, body):
        provider, play = google_returning(google_purchase(acknowledgementState=1))
        client.app.dependency_overrides[get_google_provider] = lambda: provider

        assert client.post("/v1/purchases/google", json=body).json()["success"] is True
        play.acknowledge.assert_not_called()

    def test_free_trial(self, client, premium_plan, body):
        provider, _ = google_returning(google_purchase(paymentState=2))
        client.app.dependency_overrides[get_google_provider] = lambda: provider

        result = client.post("/v1/purchases/google", json=body).json()
        assert result["success"] is True
        assert result["is_trial"] is True
        assert result["status"] == "trialing"

    def test_pending_payment(self, client, db_session, premium_plan, body):
        provider, play = google_returning(google_purchase(paymentState=0))
        client.app.dependency_overrides[get_google_provider] = lambda: provider

        result = client.post("/v1/purchases/google", json=body).json()

        assert result["success"] is False
        assert result["reason"] == "Payment is still pending"
        play.acknowledge.assert_not_called()
        (audit,) = audit_rows(db_session)
        assert audit.transaction_id == "GPA.1234-5678"
        assert db_session.query(Subscription).count() == 0

    def test_expired_purchase(self, client, premium_plan, body):
        expired = to_millis(datetime.now(UTC) - timedelta(days=1))
        provider, play = google_returning(google_purchase(expiryTimeMillis=str(expired)))
        client.app.dependency_overrides[get_google_provider] = lambda: provider

        result = client.post("/v1/purchases/google", json=body).json()

        assert result["success"] is False
        assert result["reason"] == "Subscription has expired"
        play.acknowledge.assert_not_called()

    def test_unknown_token(self, client, db_session, premium_plan, body):
        provider, _ = google_returning(error=NotFoundError("Google purchase token not found"))
        client.app.dependency_overrides[get_google_provider] = lambda: provider

        result = client.post("/v1/purchases/google", json=body).json()

        assert result["success"] is False
        assert result["reason"] == "Google purchase token not found"
        (audit,) = audit_rows(db_session)
        assert audit.provider == "google"
