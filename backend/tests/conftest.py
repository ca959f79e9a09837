"""
Pytest fixtures for edition ledger tests.

Provides test database setup, line item factories, claim tokens and a
recording certificate dispatcher in place of the HTTP one.
"""

from datetime import datetime, timedelta

import pytest
from edition_ledger import create_app
from edition_ledger.extensions import db
from edition_ledger.models import LineItem
from edition_ledger.services import certificate_service, edition_service, token_service


TEST_SECRET = "test-claim-secret"
BASE_TIME = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CLAIM_TOKEN_SECRET': TEST_SECRET,
        'CERTIFICATE_SERVICE_URL': None,
        'CERTIFICATE_BASE_URL': 'https://certs.example.test',
        'CLAIM_BASE_URL': 'https://claim.example.test',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


class RecordingDispatcher:
    """Stands in for CertificateDispatcher; records line items instead of POSTing."""

    def __init__(self):
        self.submitted = []
        self.fail = False

    def submit(self, line_item_id):
        if self.fail:
            raise RuntimeError("certificate generator unreachable")
        self.submitted.append(line_item_id)
        return None


@pytest.fixture(autouse=True)
def certificates(app, monkeypatch):
    dispatcher = RecordingDispatcher()
    monkeypatch.setitem(app.extensions, certificate_service.EXTENSION_KEY, dispatcher)
    return dispatcher


@pytest.fixture(scope='function')
def make_line_item(db_session):
    """
    Insert a line item row directly (no events, no numbering).

    created_at defaults to BASE_TIME + <call index> minutes so rows are
    ordered by creation in the order the test creates them.
    """
    counter = {"n": 0}

    def _make(line_item_id, product_id="PROD-X", *, order_id="ORD-1", status="inactive",
              edition_number=None, edition_total=None, created_at=None, **owner):
        counter["n"] += 1
        item = LineItem(
            line_item_id=line_item_id,
            order_id=order_id,
            product_id=product_id,
            status=status,
            edition_number=edition_number,
            edition_total=edition_total,
            created_at=created_at or BASE_TIME + timedelta(minutes=counter["n"]),
            owner_id=owner.get("owner_id"),
            owner_name=owner.get("owner_name"),
            owner_email=owner.get("owner_email"),
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _make


@pytest.fixture(scope='function')
def numbered_product(make_line_item):
    """Product PROD-X with active L1, L2, L3 numbered 1, 2, 3."""
    items = [make_line_item(f"L{i}", status="active") for i in (1, 2, 3)]
    edition_service.assign_product("PROD-X", actor="test")
    return items


@pytest.fixture(scope='function')
def claim_token(app):
    """Signed claim token for a line item using the app secret."""

    def _token(item, *, ttl_seconds=3600, **overrides):
        payload = token_service.build_claim_payload(
            line_item_id=item.line_item_id,
            order_id=item.order_id,
            edition_number=item.edition_number,
        )
        payload.update(overrides)
        return token_service.issue_token(payload, ttl_seconds)

    return _token
