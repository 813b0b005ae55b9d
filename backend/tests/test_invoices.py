"""Tests for invoice derivation and the invoice API."""

import re
import uuid
from decimal import Decimal

import pytest

from app.core.config import settings
from app.models.invoice import Invoice, InvoiceStatus
from app.models.outbound_message import OutboundMessage
from app.models.payment import PaymentStatus
from app.repositories.user_repository import UserRepository
from app.schemas.invoice import InvoiceLineItem
from app.services.invoice_deriver import InvoiceDeriver, calculate_totals
from tests.conftest import make_payment


@pytest.fixture
def existing_user(db_session, user_id):
    UserRepository(db_session).get_or_create(user_id)
    db_session.commit()
    return user_id


def invoice_body(user_id, **overrides) -> dict:
    body = {
        "user_id": str(user_id),
        "line_items": [
            {"description": "Premium (monthly)", "quantity": "2", "unit_price": "10.00"},
            {"description": "Setup", "unit_price": "5.00"},
        ],
    }
    body.update(overrides)
    return body


class TestCalculateTotals:
    def test_totals(self):
        items = [
            InvoiceLineItem(description="a", quantity=Decimal("2"), unit_price=Decimal("10.00")),
            InvoiceLineItem(description="b", unit_price=Decimal("5.00")),
        ]
        subtotal, tax, due = calculate_totals(items, Decimal("0.2"), Decimal("3.00"))
        assert subtotal == Decimal("25.00")
        assert tax == Decimal("5.00")
        assert due == Decimal("27.00")

    def test_tax_rounds_half_up(self):
        items = [InvoiceLineItem(description="a", unit_price=Decimal("0.25"))]
        _, tax, _ = calculate_totals(items, Decimal("0.1"), Decimal("0"))
        assert tax == Decimal("0.03")


class TestCreateInvoice:
    def test_create_with_explicit_rate(self, client, admin_headers, existing_user):
        response = client.post(
            "/v1/invoices/", json=invoice_body(existing_user, tax_rate="0.1"), headers=admin_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "open"
        assert re.fullmatch(r"INV-\d{6}-\d{6}", data["invoice_number"])
        assert Decimal(data["subtotal"]) == Decimal("25.00")
        assert Decimal(data["tax_amount"]) == Decimal("2.50")
        assert Decimal(data["amount_due"]) == Decimal("27.50")
        assert len(data["line_items"]) == 2

    def test_create_with_country_rate(self, client, admin_headers, existing_user):
        """A country's configured rate applies to invoices created afterwards."""
        client.put(
            "/v1/admin/tax-rates/DE",
            json={"name": "VAT", "rate": "0.19"},
            headers=admin_headers,
        )
        first = client.post(
            "/v1/invoices/", json=invoice_body(existing_user, country_code="DE"), headers=admin_headers
        )
        client.put(
            "/v1/admin/tax-rates/DE",
            json={"name": "VAT", "rate": "0.07"},
            headers=admin_headers,
        )
        second = client.post(
            "/v1/invoices/", json=invoice_body(existing_user, country_code="DE"), headers=admin_headers
        )

        assert Decimal(first.json()["tax_amount"]) == Decimal("4.75")
        assert Decimal(second.json()["tax_amount"]) == Decimal("1.75")
        refetched = client.get(f"/v1/invoices/{first.json()['id']}", headers=admin_headers)
        assert Decimal(refetched.json()["tax_rate"]) == Decimal("0.19")

    def test_numbers_are_sequential(self, client, admin_headers, existing_user):
        numbers = [
            client.post("/v1/invoices/", json=invoice_body(existing_user), headers=admin_headers).json()[
                "invoice_number"
            ]
            for _ in range(2)
        ]
        first, second = (int(n.rsplit("-", 1)[1]) for n in numbers)
        assert second == first + 1

    def test_default_rate(self, client, admin_headers, existing_user, monkeypatch):
        monkeypatch.setattr(settings, "default_tax_rate", Decimal("0.5"))
        response = client.post("/v1/invoices/", json=invoice_body(existing_user), headers=admin_headers)
        assert Decimal(response.json()["tax_amount"]) == Decimal("12.50")

    def test_unknown_country(self, client, admin_headers, existing_user):
        response = client.post(
            "/v1/invoices/", json=invoice_body(existing_user, country_code="ZZ"), headers=admin_headers
        )
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found"

    def test_unknown_user(self, client, admin_headers):
        response = client.post("/v1/invoices/", json=invoice_body(uuid.uuid4()), headers=admin_headers)
        assert response.status_code == 404

    def test_discount_larger_than_total(self, client, admin_headers, existing_user):
        response = client.post(
            "/v1/invoices/",
            json=invoice_body(existing_user, discount_amount="100.00"),
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_invoice_state"

    def test_draft_invoice(self, client, admin_headers, existing_user):
        response = client.post(
            "/v1/invoices/", json=invoice_body(existing_user, issue=False), headers=admin_headers
        )
        assert response.json()["status"] == "draft"
        assert response.json()["issued_at"] is None

    def test_requires_admin(self, client, existing_user, admin_headers):
        response = client.post("/v1/invoices/", json=invoice_body(existing_user))
        assert response.status_code == 401


class TestInvoiceLifecycle:
    @pytest.fixture
    def invoice_id(self, client, admin_headers, existing_user):
        response = client.post("/v1/invoices/", json=invoice_body(existing_user), headers=admin_headers)
        return response.json()["id"]

    def test_void(self, client, admin_headers, invoice_id, db_session):
        response = client.post(f"/v1/invoices/{invoice_id}/void", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "void"
        assert response.json()["voided_at"] is not None
        types = [m.message_type for m in db_session.query(OutboundMessage).all()]
        assert sorted(types) == ["invoice.created", "invoice.voided"]

    def test_mark_paid(self, client, admin_headers, invoice_id):
        response = client.post(f"/v1/invoices/{invoice_id}/mark-paid", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert response.json()["paid_at"] is not None

    def test_paid_invoice_cannot_be_voided(self, client, admin_headers, invoice_id):
        client.post(f"/v1/invoices/{invoice_id}/mark-paid", headers=admin_headers)
        response = client.post(f"/v1/invoices/{invoice_id}/void", headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_invoice_state"

    def test_void_invoice_cannot_be_paid(self, client, admin_headers, invoice_id):
        client.post(f"/v1/invoices/{invoice_id}/void", headers=admin_headers)
        response = client.post(f"/v1/invoices/{invoice_id}/mark-paid", headers=admin_headers)
        assert response.status_code == 409

    def test_mark_uncollectible(self, client, admin_headers, invoice_id, db_session):
        response = client.post(f"/v1/invoices/{invoice_id}/mark-uncollectible", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "uncollectible"
        types = [m.message_type for m in db_session.query(OutboundMessage).all()]
        assert sorted(types) == ["invoice.created", "invoice.uncollectible"]

        paid = client.post(f"/v1/invoices/{invoice_id}/mark-paid", headers=admin_headers)
        assert paid.json()["status"] == "paid"

    def test_only_open_invoices_are_uncollectible(self, client, admin_headers, invoice_id):
        client.post(f"/v1/invoices/{invoice_id}/mark-paid", headers=admin_headers)
        response = client.post(f"/v1/invoices/{invoice_id}/mark-uncollectible", headers=admin_headers)
        assert response.status_code == 409

    def test_unknown_invoice(self, client, admin_headers):
        response = client.post(f"/v1/invoices/{uuid.uuid4()}/void", headers=admin_headers)
        assert response.status_code == 404


class TestInvoiceFromPayment:
    def test_derive_is_idempotent(self, client, admin_headers, db_session, user_id):
        """A payment has at most one invoice."""
        payment = make_payment(db_session, user_id, amount=Decimal("12.00"))

        first = client.post(f"/v1/invoices/from-payment/{payment.id}", headers=admin_headers)
        second = client.post(f"/v1/invoices/from-payment/{payment.id}", headers=admin_headers)

        assert first.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert first.json()["status"] == "paid"
        assert first.json()["payment_id"] == str(payment.id)
        assert Decimal(first.json()["amount_due"]) == Decimal("12.00")
        assert db_session.query(Invoice).count() == 1

    def test_failed_payment_gives_open_invoice(self, db_session, user_id):
        payment = make_payment(
            db_session, user_id, status=PaymentStatus.FAILED, provider_payment_id="pi_failed"
        )
        invoice = InvoiceDeriver(db_session).create_from_payment(payment.id)
        assert invoice.status == InvoiceStatus.OPEN.value
        assert invoice.line_items[0]["description"] == "Payment pi_failed"

    def test_payment_amount_includes_tax(self, db_session, user_id, monkeypatch):
        """The amount actually paid stays the amount due; tax is carved out of it."""
        monkeypatch.setattr(settings, "default_tax_rate", Decimal("0.2"))
        payment = make_payment(db_session, user_id, amount=Decimal("12.00"))

        invoice = InvoiceDeriver(db_session).create_from_payment(payment.id)

        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.amount_due == Decimal("12.00")
        assert invoice.subtotal == Decimal("10.00")
        assert invoice.tax_amount == Decimal("2.00")
        assert invoice.tax_rate == Decimal("0.2")

    def test_unknown_payment(self, client, admin_headers):
        response = client.post(f"/v1/invoices/from-payment/{uuid.uuid4()}", headers=admin_headers)
        assert response.status_code == 404


class TestListInvoices:
    def test_filters(self, client, admin_headers, db_session, existing_user):
        other = uuid.uuid4()
        UserRepository(db_session).get_or_create(other)
        db_session.commit()
        client.post("/v1/invoices/", json=invoice_body(existing_user), headers=admin_headers)
        client.post("/v1/invoices/", json=invoice_body(existing_user, issue=False), headers=admin_headers)
        client.post("/v1/invoices/", json=invoice_body(other), headers=admin_headers)

        mine = client.get(f"/v1/invoices/?user_id={existing_user}", headers=admin_headers).json()
        drafts = client.get("/v1/invoices/?status=draft", headers=admin_headers).json()
        everything = client.get("/v1/invoices/?limit=2", headers=admin_headers).json()

        assert len(mine) == 2
        assert [i["status"] for i in drafts] == ["draft"]
        assert len(everything) == 2
