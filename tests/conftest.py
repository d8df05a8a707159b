import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-jwt")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_portal")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_portal")

import hashlib
import hmac
import json
import time
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import portal.models  # noqa: F401
from portal.core.exceptions import ExternalServiceError, PaymentSetupFailedError
from portal.db.base import Base, utcnow
from portal.db.session import get_session
from portal.main import app
from portal.middleware.auth import TokenManager
from portal.models.checkout import CheckoutSession
from portal.models.lead import Lead
from portal.models.lock import ApplicationLock
from portal.services.payment_gateway import (
    CheckoutSessionInfo,
    CouponInfo,
    SessionStatus,
    StripeGateway,
    build_metadata,
    get_payment_gateway,
)
from portal.services.pricing import PricingSettings
from portal.services.redis import get_cache

WEBHOOK_SECRET = "whsec_test_portal"


class FakeGateway(StripeGateway):
    """In-memory Stripe stand-in; webhook verification is the real one."""

    def __init__(self):
        super().__init__(secret_key="sk_test_portal", webhook_secret=WEBHOOK_SECRET, currency="cad")
        self.created = []
        self.sessions = {}
        self.expired = []
        self.fail_create = False

    async def create_checkout_session(
        self,
        dealer_id,
        lead_ids,
        unit_price,
        lock_type=None,
        discount=None,
        line_prices=None,
        expires_in_minutes=None,
        coupon_id=None,
        customer_email=None,
    ):
        if self.fail_create:
            raise PaymentSetupFailedError(details={"stripe_error": "card_declined"})

        session_id = f"cs_test_{len(self.created) + 1:04d}"
        line_prices = line_prices or {lead_id: unit_price for lead_id in lead_ids}
        total = sum(line_prices.values(), Decimal("0.00"))
        self.created.append({
            "session_id": session_id,
            "dealer_id": dealer_id,
            "lead_ids": list(lead_ids),
            "unit_price": unit_price,
            "lock_type": lock_type,
            "discount": discount,
            "line_prices": dict(line_prices),
            "expires_in_minutes": expires_in_minutes,
            "coupon_id": coupon_id,
        })
        self.sessions[session_id] = SessionStatus(
            session_id=session_id,
            paid=False,
            status="open",
            payment_id=None,
            customer_id=None,
            amount_total=total,
            metadata=build_metadata(dealer_id, lead_ids, unit_price, lock_type, discount),
        )
        return CheckoutSessionInfo(session_id, f"https://checkout.stripe.test/{session_id}", total)

    def pay(self, session_id, payment_id="pi_test_0001", customer_id="cus_test_0001"):
        self.sessions[session_id] = replace(
            self.sessions[session_id],
            paid=True,
            status="complete",
            payment_id=payment_id,
            customer_id=customer_id,
        )

    def set_status(self, session_id, status):
        self.sessions[session_id] = replace(self.sessions[session_id], status=status)

    async def complete_session(self, session_id):
        if session_id not in self.sessions:
            raise ExternalServiceError("Unable to confirm payment", code="payment_lookup_failed")
        return self.sessions[session_id]

    async def list_coupons(self, limit=100):
        return [CouponInfo(id="SPRING10", name="Spring", percent_off=10.0, amount_off=None, currency=None, valid=True)]

    async def expire_session(self, session_id):
        self.expired.append(session_id)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type, obj, event_id="evt_test_0001") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    maker = async_sessionmaker(db_engine, expire_on_commit=False)
    async with maker() as session:
        yield session


@pytest.fixture
def pricing():
    return PricingSettings(
        standard_price=Decimal("50.00"),
        discounted_price=Decimal("35.00"),
        age_discount_enabled=True,
        age_discount_threshold=30,
        age_discount_percentage=25,
        temporary_lock_minutes=60,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def lead_factory(db_session):
    async def _create(**overrides) -> Lead:
        values = {
            "full_name": "Jordan Tremblay",
            "email": "jordan@example.com",
            "phone_number": "403-555-0199",
            "street_address": "12 Elbow Dr SW",
            "postal_code": "T2S 1A1",
            "city": "Calgary",
            "province": "AB",
            "vehicle_type": "SUV",
            "employment_status": "full-time",
            "monthly_income": Decimal("5200.00"),
            "status": "submitted",
            "submitted_at": utcnow() - timedelta(days=1),
        }
        values.update(overrides)
        lead = Lead(**values)
        db_session.add(lead)
        await db_session.commit()
        return lead

    return _create


@pytest.fixture
def lock_factory(db_session):
    async def _create(lead_id, dealer_id, lock_type="temporary-24h", expires_in=timedelta(hours=24), **overrides):
        now = utcnow()
        values = {
            "lead_id": lead_id,
            "dealer_id": dealer_id,
            "lock_type": lock_type,
            "created_at": now - timedelta(minutes=5),
            "expires_at": now + expires_in if expires_in is not None else None,
            "is_paid": True,
            "payment_id": "pi_test_lock",
            "payment_amount": Decimal("4.99"),
        }
        values.update(overrides)
        lock = ApplicationLock(**values)
        db_session.add(lock)
        await db_session.commit()
        return lock

    return _create


@pytest.fixture
def checkout_factory(db_session):
    async def _create(session_id, dealer_id, lead_ids, kind="purchase", price=Decimal("50.00"), **overrides):
        values = {
            "id": session_id,
            "dealer_id": dealer_id,
            "kind": kind,
            "lead_ids": list(lead_ids),
            "line_prices": {lead_id: str(price) for lead_id in lead_ids},
            "unit_price": price,
            "total_amount": price * len(lead_ids),
            "status": "open",
        }
        values.update(overrides)
        record = CheckoutSession(**values)
        db_session.add(record)
        await db_session.commit()
        return record

    return _create


@pytest.fixture
def auth_headers():
    def _headers(user_id="dealer-1", role="dealer", email="dealer@example.com"):
        token = TokenManager.create_access_token({"sub": user_id, "role": role, "email": email})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def client(db_session, gateway):
    async def _session():
        yield db_session

    async def _no_cache():
        return None

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_cache] = _no_cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def signed_event():
    """Returns (body, headers) for a signed Stripe webhook delivery."""
    def _build(event_type, obj, event_id="evt_test_0001", secret=WEBHOOK_SECRET):
        body = stripe_event(event_type, obj, event_id)
        headers = {"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"}
        return body, headers

    return _build
