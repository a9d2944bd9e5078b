"""
Shared pytest fixtures for the catering workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_quote / make_invoice / make_change_request: factories
    - quote / invoice: the standard 100-guest wedding with a priced invoice
"""

from datetime import date, timedelta

import pytest

from catering import create_app
from catering.models import db as _db
from catering.models.change_request import ChangeRequest
from catering.models.invoice import Invoice, InvoiceLineItem
from catering.models.quote import QuoteRequest
from catering.services.access_token_service import issue_access_token
from catering.services.quote_update_service import regenerate_line_items, update_invoice_line_items
from catering.services.tax_service import apply_to_invoice

EVENT_DATE = date.today() + timedelta(days=60)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_quote():
    def _make(**overrides):
        fields = {
            "contact_name": "Jane Doe",
            "email": "jane@gmail.com",
            "phone": "555-0100",
            "event_name": "Doe Wedding",
            "event_type": "wedding",
            "event_date": EVENT_DATE,
            "start_time": "17:00",
            "guest_count": 100,
            "location": "Riverside Hall",
            "service_type": "drop-off",
            "proteins": ["fried_chicken"],
            "sides": ["mac_and_cheese", "collard_greens"],
            "status": "quoted",
            "workflow_status": "sent",
        }
        fields.update(overrides)
        quote = QuoteRequest(**fields)
        _db.session.add(quote)
        _db.session.commit()
        return quote
    return _make


@pytest.fixture()
def make_invoice():
    def _make(quote, *, workflow_status="sent", extra_items=(), **overrides):
        invoice = Invoice(quote_request_id=quote.id, status=workflow_status,
                          workflow_status=workflow_status, **overrides)
        _db.session.add(invoice)
        _db.session.flush()
        regenerate_line_items(quote.id)
        update_invoice_line_items(invoice.id, quote.id)
        for position, item in enumerate(extra_items, start=100):
            li = InvoiceLineItem(sort_order=position, **item)
            li.recompute_total()
            invoice.line_items.append(li)
        _db.session.flush()
        apply_to_invoice(invoice, sum(li.total_price for li in invoice.line_items))
        issue_access_token(invoice)
        _db.session.commit()
        return invoice
    return _make


@pytest.fixture()
def make_change_request():
    def _make(invoice, requested_changes, **overrides):
        fields = {
            "invoice_id": invoice.id,
            "customer_email": "jane@gmail.com",
            "request_type": "menu_change",
            "status": "pending",
            "requested_changes": requested_changes,
            "customer_comments": "Please update our order",
        }
        fields.update(overrides)
        cr = ChangeRequest(**fields)
        _db.session.add(cr)
        _db.session.commit()
        return cr
    return _make


# ── Convenience fixtures ─────────────────────────────────────────────────

CUSTOM_CAKE = {
    "title": "Custom Cake",
    "description": "Three-tier lemon cake",
    "category": "Dessert",
    "quantity": 1,
    "unit_price": 15000,
    "is_override": True,
}


@pytest.fixture()
def quote(make_quote):
    """100 guests, fried chicken, two sides, drop-off."""
    return make_quote()


@pytest.fixture()
def invoice(quote, make_invoice):
    """
    Canonical items for ``quote`` plus a hand-added Custom Cake override.

    Fried Chicken 100 x 14.00, Mac And Cheese 100 x 3.50, Collard Greens
    100 x 3.00, Drop-Off Delivery 50.00, Custom Cake 150.00:
    subtotal 2250.00, tax 8% 180.00, total 2430.00.
    """
    return make_invoice(quote, extra_items=[CUSTOM_CAKE])
