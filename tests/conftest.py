# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The database URL and gateway credentials are pinned before anything under
``src`` is imported, because Config reads the environment at import time.
"""

import os
import sys
import tempfile
from datetime import timedelta

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="bookstore-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["FLASK_TESTING"] = "true"
os.environ["PAYMENT_SWEEP_ENABLED"] = "false"
os.environ["PHONEPE_MERCHANT_ID"] = "MERCHANTUAT"
os.environ["PHONEPE_SALT_KEY"] = "test-salt-key"
os.environ["PHONEPE_SALT_INDEX"] = "1"
os.environ["PAYMENT_LIVE_MODE"] = "false"
os.environ["DELIVERY_API_TOKEN"] = "carrier-secret"
os.environ["SMTP_HOST"] = ""
os.environ["TAX_RATE"] = "0.05"
os.environ["SHIPPING_FEE"] = "50"

# Ensure the project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from src.database import Base, SessionLocal, engine
from src.models import (
    Book,
    Discount,
    DiscountKind,
    DiscountStatus,
    ItemKind,
    Referral,
    ReferralStatus,
    User,
    utcnow,
)
from src.observability import reset_metrics
from src.services.notification_service import NotificationService
from src.services.payment_gateway import PaymentGatewayClient
from src.services.settings_service import SettingsService


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeHttp:
    """Stands in for the ``requests`` module inside PaymentGatewayClient."""

    def __init__(self):
        self.calls = []
        self.post_responses = []
        self.get_responses = []

    def queue_post(self, status_code=200, body=None):
        self.post_responses.append(FakeResponse(status_code, body))

    def queue_get(self, status_code=200, body=None):
        self.get_responses.append(FakeResponse(status_code, body))

    def queue_status(self, code, transaction_id="T-PROVIDER-1", instrument="UPI"):
        self.queue_get(
            200,
            {
                "success": code == "PAYMENT_SUCCESS",
                "code": code,
                "data": {"transactionId": transaction_id, "paymentInstrument": {"type": instrument}},
            },
        )

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(("POST", url, json, headers))
        return self.post_responses.pop(0)

    def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, None, headers))
        return self.get_responses.pop(0)


def pay_page_response(url="https://pay.example.test/session/abc"):
    return {
        "success": True,
        "code": "PAYMENT_INITIATED",
        "data": {"instrumentResponse": {"type": "PAY_PAGE", "redirectInfo": {"url": url}}},
    }


@pytest.fixture
def db_session():
    """Fresh schema and a session per test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_metrics()
    NotificationService().reset()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def other_session(db_session):
    """A second, independent session for interleaving tests."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def runtime_settings(db_session):
    return SettingsService(db_session).resolve()


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def gateway_factory(fake_http):
    return lambda settings: PaymentGatewayClient(settings, http=fake_http)


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(name="Reader", role="customer", mobile="9876543210"):
        counter["n"] += 1
        user = User(name=name, email=f"reader{counter['n']}@example.com", mobile=mobile, role=role)
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_book(db_session):
    counter = {"n": 0}

    def _make(title="Gita Press Edition", kind=ItemKind.PHYSICAL, price=300, stock=10):
        counter["n"] += 1
        book = Book(
            sku=f"SKU-{counter['n']:03d}",
            title=title,
            kind=kind,
            price=price,
            stock=stock if kind == ItemKind.PHYSICAL else None,
            reserved=0,
        )
        db_session.add(book)
        db_session.commit()
        return book

    return _make


@pytest.fixture
def make_discount(db_session):
    def _make(
        code="SAVE50",
        kind=DiscountKind.FLAT_AMOUNT,
        value=50,
        max_discount=None,
        max_usage=None,
        current_usage=0,
        valid_days=30,
        status=DiscountStatus.ACTIVE,
    ):
        discount = Discount(
            code=code,
            kind=kind,
            value=value,
            max_discount=max_discount,
            max_usage=max_usage,
            current_usage=current_usage,
            valid_till=utcnow() + timedelta(days=valid_days),
            status=status,
        )
        db_session.add(discount)
        db_session.commit()
        return discount

    return _make


@pytest.fixture
def make_referral(db_session):
    def _make(owner, code="FRIEND10", rate=50, linked=False, status=ReferralStatus.ACTIVE):
        referral = Referral(
            code=code,
            userID=owner.userID,
            reward_rate=rate,
            is_discount_linked=linked,
            status=status,
            uses=0,
            total_earned=0,
            pending_payout=0,
        )
        db_session.add(referral)
        db_session.commit()
        return referral

    return _make
