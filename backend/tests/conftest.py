"""Shared test fixtures for all test modules."""

import contextlib
import json
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient

import app.models  # noqa: F401
from app.core import database as db_module
from app.core.config import settings
from app.core.database import Base, get_db
from app.main import app
from app.models.payment import Payment, PaymentProvider, PaymentStatus
from app.models.plan import Plan, SubscriptionTier
from app.repositories.plan_repository import PlanRepository
from app.schemas.plan import PlanCreate
from app.schemas.provider_event import EventType, ProviderEvent

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

ADMIN_KEY = "test-admin-key"


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    # Patch module-level engine and session factory
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    # Restore originals
    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Keep provider retry backoff out of test wall time."""
    monkeypatch.setattr(settings, "provider_backoff_base_seconds", 0.0)


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return {"Authorization": f"Bearer {ADMIN_KEY}", "X-Admin-Id": "ops@example.com"}


def make_plan(
    db: Session,
    code: str = "premium",
    tier: SubscriptionTier = SubscriptionTier.PREMIUM,
    price_monthly: Decimal = Decimal("9.99"),
    price_yearly: Decimal = Decimal("99.99"),
    **products: str,
) -> Plan:
    """Create and commit a plan; ``products`` maps product columns to ids."""
    plan = PlanRepository(db).create(
        PlanCreate(
            code=code,
            name=code.title(),
            tier=tier,
            price_monthly=price_monthly,
            price_yearly=price_yearly,
            **products,
        )
    )
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def premium_plan(db_session):
    """Premium plan mapped to a product id on every provider."""
    return make_plan(
        db_session,
        stripe_price_id_monthly="price_premium_monthly",
        stripe_price_id_yearly="price_premium_yearly",
        apple_product_id_monthly="com.example.premium.monthly",
        apple_product_id_yearly="com.example.premium.yearly",
        google_product_id_monthly="premium_monthly",
    )


@pytest.fixture
def basic_plan(db_session):
    """Lower-ranked plan used for downgrades."""
    return make_plan(
        db_session,
        code="meditation",
        tier=SubscriptionTier.MEDITATION,
        price_monthly=Decimal("4.99"),
        price_yearly=Decimal("49.99"),
        stripe_price_id_monthly="price_meditation_monthly",
        apple_product_id_monthly="com.example.meditation.monthly",
        google_product_id_monthly="meditation_monthly",
    )


@pytest.fixture
def user_id():
    return uuid.uuid4()


def make_event(
    event_type: EventType,
    provider: PaymentProvider = PaymentProvider.APPLE,
    lineage: str | None = "1000000000000001",
    event_id: str | None = None,
    occurred_at: datetime | None = None,
    **fields: Any,
) -> ProviderEvent:
    """Build a canonical event; ``occurred_at`` defaults to now."""
    return ProviderEvent(
        provider=provider,
        provider_event_id=event_id or f"evt_{uuid.uuid4().hex}",
        type=event_type,
        original_transaction_id=lineage,
        occurred_at=occurred_at or datetime.now(UTC),
        **fields,
    )


def make_payment(
    db: Session,
    user_id: uuid.UUID,
    amount: Decimal = Decimal("10.00"),
    provider: PaymentProvider = PaymentProvider.STRIPE,
    provider_payment_id: str = "pi_test_1",
    status: PaymentStatus = PaymentStatus.COMPLETED,
    subscription_id: uuid.UUID | None = None,
) -> Payment:
    from app.repositories.payment_repository import PaymentRepository
    from app.repositories.user_repository import UserRepository

    UserRepository(db).get_or_create(user_id)
    payment = PaymentRepository(db).create(
        user_id=user_id,
        amount=amount,
        currency="USD",
        provider=provider,
        status=status,
        subscription_id=subscription_id,
        provider_payment_id=provider_payment_id,
    )
    db.commit()
    db.refresh(payment)
    return payment


def in_days(days: float) -> datetime:
    return datetime.now(UTC) + timedelta(days=days)


class JSONTokenVerifier:
    """Stand-in for the Apple JWS verifier: tokens are plain JSON strings."""

    def verify(self, token: str) -> dict[str, Any]:
        return json.loads(token)


def apple_notification_body(
    notification_type: str,
    transaction: dict[str, Any],
    renewal: dict[str, Any] | None = None,
    subtype: str | None = None,
    notification_uuid: str | None = None,
    signed_date: datetime | None = None,
    bundle_id: str = "com.example.app",
) -> dict[str, Any]:
    """Webhook body readable by ``JSONTokenVerifier``."""
    data: dict[str, Any] = {
        "bundleId": bundle_id,
        "environment": "Sandbox",
        "signedTransactionInfo": json.dumps(transaction),
    }
    if renewal is not None:
        data["signedRenewalInfo"] = json.dumps(renewal)
    payload: dict[str, Any] = {
        "notificationType": notification_type,
        "notificationUUID": notification_uuid or str(uuid.uuid4()),
        "data": data,
        "signedDate": int((signed_date or datetime.now(UTC)).timestamp() * 1000),
    }
    if subtype is not None:
        payload["subtype"] = subtype
    return {"signedPayload": json.dumps(payload)}


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)
