"""
Centralized Test Configuration.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from itertools import count

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.config import settings
from backend.app.core.jwt import create_access_token
from backend.app.core.redis_client import get_redis
import backend.app.core.redis_client as redis_client_module
from backend.app.models.client import Client
from backend.app.models.enums import UserRole
from backend.app.models.program import Program
from backend.app.models.user import User
from backend.app.services.email_service import get_email_service
from backend.app.services.stripe_gateway import get_payment_gateway

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_WEBHOOK_SECRET = "whsec_test_secret"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}

    async def ping(self):
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def flushdb(self):
        self.store = {}


class FakeStripeGateway:
    """Stands in for StripeGateway; records calls and raises on demand."""

    def __init__(self):
        self.calls = []
        self.fail_with = {}
        self.latest_invoice = None
        self.paid_invoice = None
        self.payment_methods = []
        self.session_status = {}
        self._ids = count(1)

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        error = self.fail_with.get(name)
        if error is not None:
            raise error

    def called(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    async def create_checkout_session(self, **params):
        self._record("create_checkout_session", **params)
        session_id = f"cs_test_{next(self._ids)}"
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    async def expire_checkout_session(self, session_id):
        self._record("expire_checkout_session", session_id=session_id)
        return {"id": session_id, "status": self.session_status.get(session_id, "expired")}

    async def create_recurring_price(self, amount_cents, product_name, metadata):
        self._record("create_recurring_price", amount_cents=amount_cents, product_name=product_name)
        return f"price_test_{next(self._ids)}"

    async def create_subscription(self, customer_id, price_id, payment_method_id, metadata, cancel_at=None):
        self._record(
            "create_subscription",
            customer_id=customer_id,
            price_id=price_id,
            payment_method_id=payment_method_id,
            metadata=metadata,
            cancel_at=cancel_at,
        )
        return {
            "id": f"sub_test_{next(self._ids)}",
            "status": "active",
            "current_period_end": int(time.time()) + 30 * 24 * 3600,
        }

    async def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id=subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    async def pause_subscription(self, subscription_id):
        self._record("pause_subscription", subscription_id=subscription_id)
        return {"id": subscription_id, "pause_collection": {"behavior": "void"}}

    async def resume_subscription(self, subscription_id):
        self._record("resume_subscription", subscription_id=subscription_id)
        return {"id": subscription_id, "pause_collection": None}

    async def retrieve_latest_invoice(self, subscription_id):
        self._record("retrieve_latest_invoice", subscription_id=subscription_id)
        return self.latest_invoice

    async def pay_invoice(self, invoice_id):
        self._record("pay_invoice", invoice_id=invoice_id)
        return self.paid_invoice or {"id": invoice_id, "status": "paid", "amount_paid": 50000}

    async def list_card_payment_methods(self, customer_id):
        self._record("list_card_payment_methods", customer_id=customer_id)
        return self.payment_methods


class FakeEmailService:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_welcome_receipt(self, **kwargs):
        if self.fail:
            raise RuntimeError("SMTP down")
        self.sent.append(kwargs)
        return True


@pytest.fixture
def redis_client_session():
    return MockRedis()


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def fake_email():
    return FakeEmailService()


@pytest.fixture(autouse=True)
def apply_overrides(redis_client_session, fake_gateway, fake_email, monkeypatch):
    """Point the app at the test database, mock Redis and the fake processors."""
    monkeypatch.setattr(redis_client_module, "redis_client", redis_client_session)
    monkeypatch.setattr(settings, "stripe_webhook_secret", TEST_WEBHOOK_SECRET)

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_email_service] = lambda: fake_email
    yield
    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


# Team and catalog fixtures

async def _make_user(db_session, email, name, role):
    user = User(email=email, name=name, role=role, is_active=True)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def admin(db_session):
    return await _make_user(db_session, "owner@gym.test", "Olivia Owner", UserRole.ADMIN)


@pytest.fixture
async def manager(db_session):
    return await _make_user(db_session, "manager@gym.test", "Mia Manager", UserRole.MANAGER)


@pytest.fixture
async def trainer(db_session):
    return await _make_user(db_session, "trainer@gym.test", "Tom Trainer", UserRole.TRAINER)


@pytest.fixture
async def other_trainer(db_session):
    return await _make_user(db_session, "other@gym.test", "Olga Other", UserRole.TRAINER)


@pytest.fixture
async def program(db_session):
    program = Program(
        name="12-Week Transformation",
        default_price=Decimal("700.00"),
        default_duration_months=3,
        is_recurring=True,
    )
    db_session.add(program)
    await db_session.commit()
    return program


@pytest.fixture
async def roster_client(db_session, trainer):
    """Client assigned to `trainer`, no saved card yet."""
    client = Client(name="Casey Client", email="casey@example.com", assigned_trainer_id=trainer.id)
    db_session.add(client)
    await db_session.commit()
    return client


@pytest.fixture
async def card_client(db_session, trainer):
    """Client assigned to `trainer` with a Stripe customer (saved card)."""
    client = Client(
        name="Cora Card",
        email="cora@example.com",
        assigned_trainer_id=trainer.id,
        stripe_customer_id="cus_test_cora",
    )
    db_session.add(client)
    await db_session.commit()
    return client


def auth_headers(user) -> dict:
    token = create_access_token(data={"sub": user.email, "user_id": user.id, "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}


def sign_webhook(event: dict, secret: str = TEST_WEBHOOK_SECRET):
    """Serialize an event and sign it the way Stripe does."""
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return payload, {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


async def post_webhook(client, event: dict):
    payload, headers = sign_webhook(event)
    return await client.post("/v1/webhooks/stripe", content=payload, headers=headers)


def stripe_event(event_type: str, obj: dict, event_id: str = None) -> dict:
    return {
        "id": event_id or f"evt_{event_type.replace('.', '_')}_{obj.get('id', 'x')}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


# Read-back helpers use a fresh session so nothing comes from a stale identity map

async def fetch(model, pk):
    async with TestingSessionLocal() as session:
        return await session.get(model, pk)


async def fetch_all(statement):
    async with TestingSessionLocal() as session:
        result = await session.execute(statement)
        return list(result.scalars().all())


async def make_purchase(db_session, client, trainer, status, amount="500.00", subscription_id=None, **extra):
    """Insert a purchase directly through the ledger."""
    from backend.app.domain.billing.commission import calc_commission
    from backend.app.domain.billing.ledger import PurchaseLedger

    purchase = await PurchaseLedger.create_purchase(
        db_session,
        client_id=client.id,
        trainer_id=trainer.id,
        amount=Decimal(amount),
        split=calc_commission(Decimal(amount), trainer.role),
        status=status,
        stripe_subscription_id=subscription_id,
        custom_program_name=extra.pop("custom_program_name", "Personal Training"),
        **extra,
    )
    await db_session.commit()
    return purchase
