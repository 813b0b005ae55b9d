"""Tests for parked event triage and retry."""

import uuid
from datetime import timedelta

import pytest

from app.core.config import settings
from app.core.errors import InvalidTransitionError, NotFoundError
from app.models.idempotency_record import IdempotencyRecord
from app.models.parked_event import ParkedEvent, ParkedEventStatus
from app.models.shared import utc_now
from app.models.subscription import Subscription
from app.schemas.provider_event import EventType
from app.services.parked_events import ParkedEventService
from app.services.reconciliation import ApplyOutcome, ReconciliationEngine
from tests.conftest import in_days, make_event, make_plan

UNMAPPED_PRODUCT = "com.example.unmapped.monthly"


@pytest.fixture
def parked(db_session, user_id):
    """A purchase parked because its product has no plan yet."""
    result = ReconciliationEngine(db_session).apply(
        make_event(
            EventType.PURCHASED,
            event_id="uuid-parked",
            product_id=UNMAPPED_PRODUCT,
            expires_at=in_days(30),
            user_id=user_id,
        )
    )
    assert result.outcome == ApplyOutcome.PARKED
    return db_session.query(ParkedEvent).filter(ParkedEvent.id == result.parked_event_id).one()


def map_product(db_session):
    make_plan(db_session, code="unmapped", apple_product_id_monthly=UNMAPPED_PRODUCT)


class TestParkedEventService:
    def test_parked_row_keeps_the_event(self, db_session, parked):
        assert parked.dedup_key == "apple:uuid-parked"
        assert parked.event_type == "purchased"
        assert parked.error_code == "unknown_product"
        assert parked.lineage_key == "apple:1000000000000001"
        assert parked.payload["product_id"] == UNMAPPED_PRODUCT
        assert parked.attempts == 1
        assert parked.next_attempt_at is not None
        assert db_session.query(IdempotencyRecord).count() == 0

    def test_replay_after_fix(self, db_session, parked):
        """Once the product is mapped the replay applies the event."""
        map_product(db_session)

        result = ParkedEventService(db_session).replay(parked.id)

        assert result.outcome == ApplyOutcome.APPLIED
        db_session.refresh(parked)
        assert parked.status == ParkedEventStatus.RESOLVED.value
        assert parked.resolved_at is not None
        assert db_session.query(Subscription).count() == 1

    def test_replay_still_failing(self, db_session, parked):
        result = ParkedEventService(db_session).replay(parked.id)

        assert result.outcome == ApplyOutcome.PARKED
        db_session.refresh(parked)
        assert parked.status == ParkedEventStatus.PARKED.value
        assert parked.attempts == 2

    def test_discard(self, db_session, parked):
        service = ParkedEventService(db_session)
        discarded = service.discard(parked.id)
        assert discarded.status == ParkedEventStatus.DISCARDED.value

        with pytest.raises(InvalidTransitionError):
            service.replay(parked.id)
        with pytest.raises(InvalidTransitionError):
            service.discard(parked.id)

    def test_unknown_parked_event(self, db_session):
        with pytest.raises(NotFoundError):
            ParkedEventService(db_session).replay(uuid.uuid4())

    def test_list_filters(self, db_session, parked):
        service = ParkedEventService(db_session)
        assert [p.id for p in service.list_parked()] == [parked.id]
        assert service.list_parked(error_code="not_enrolled") == []
        assert service.list_parked(status=ParkedEventStatus.RESOLVED) == []


class TestRetryDue:
    def test_only_due_events_are_retried(self, db_session, parked):
        """Events still inside their backoff window are left alone."""
        map_product(db_session)

        assert ParkedEventService(db_session).retry_due() == 0
        db_session.refresh(parked)
        assert parked.status == ParkedEventStatus.PARKED.value

        parked.next_attempt_at = utc_now() - timedelta(minutes=1)
        db_session.commit()

        assert ParkedEventService(db_session).retry_due() == 1
        db_session.refresh(parked)
        assert parked.status == ParkedEventStatus.RESOLVED.value

    def test_gives_up_after_max_attempts(self, db_session, parked, monkeypatch):
        monkeypatch.setattr(settings, "parked_event_max_attempts", 1)
        parked.next_attempt_at = utc_now() - timedelta(minutes=1)
        db_session.commit()

        assert ParkedEventService(db_session).retry_due() == 0
        db_session.refresh(parked)
        assert parked.attempts == 1


class TestParkedEventsAPI:
    def test_list(self, client, admin_headers, parked):
        response = client.get("/v1/admin/parked-events", headers=admin_headers)
        assert response.status_code == 200
        assert [p["dedup_key"] for p in response.json()] == ["apple:uuid-parked"]

    def test_replay(self, client, admin_headers, db_session, parked):
        map_product(db_session)
        response = client.post(f"/v1/admin/parked-events/{parked.id}/replay", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        assert response.json()["subscription"]["status"] == "active"

    def test_discard_then_replay_conflicts(self, client, admin_headers, parked):
        discard = client.post(f"/v1/admin/parked-events/{parked.id}/discard", headers=admin_headers)
        assert discard.status_code == 200
        assert discard.json()["status"] == "discarded"

        replay = client.post(f"/v1/admin/parked-events/{parked.id}/replay", headers=admin_headers)
        assert replay.status_code == 409
        assert replay.json()["detail"]["code"] == "invalid_transition"

    def test_unknown(self, client, admin_headers):
        response = client.post(
            f"/v1/admin/parked-events/{uuid.uuid4()}/discard", headers=admin_headers
        )
        assert response.status_code == 404
