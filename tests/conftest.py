import os

# Settings are read once per process; configure them before importing app
os.environ["ENV_MODE"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CHECKOUT_LOCK_BACKEND"] = "local"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["AUTO_ACCEPT_ORDERS"] = "false"
os.environ["LAZY_VERIFY_ON_ORDER_POLL"] = "false"

import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import build_engine, get_db, init_db
from app.main import app as api
from app.services.locks import LocalKeyedLock, get_checkout_lock
from app.services.orders import create_order
from app.services.payment import MockGatewayClient, get_gateway_client
from app.services.reconciler import StatusReconciler
from app.services.checkout import CheckoutOrchestrator
from app.services.webhook import WebhookReceiver, sign_payload

WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]

PIZZA = {"menu_item_id": 7, "name": "Margherita", "quantity": 2, "unit_price": Decimal("10.99")}


class TaskRecorder:
    """Stands in for a Celery task; records what would have been queued."""

    def __init__(self):
        self.calls = []

    def delay(self, order_data):
        self.calls.append(order_data)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def effects(monkeypatch):
    placed, failed = TaskRecorder(), TaskRecorder()
    monkeypatch.setattr("app.services.reconciler.track_order_placed", placed)
    monkeypatch.setattr("app.services.reconciler.notify_payment_failed", failed)
    return {"placed": placed.calls, "failed": failed.calls}


@pytest.fixture
def gateway():
    return MockGatewayClient()


@pytest.fixture
def lock():
    return LocalKeyedLock()


@pytest.fixture
def reconciler(gateway):
    return StatusReconciler(gateway, allow_retry=True)


@pytest.fixture
def orchestrator(gateway, lock):
    return CheckoutOrchestrator(gateway, lock, lock_timeout=5)


@pytest.fixture
def receiver(reconciler):
    return WebhookReceiver(WEBHOOK_SECRET, reconciler)


@pytest.fixture
def make_order(session_maker):
    async def _make(reference=None, items=None, currency="EUR"):
        async with session_maker() as session:
            return await create_order(session, items or [dict(PIZZA)], currency, reference=reference)
    return _make


@pytest.fixture
async def client(session_maker, gateway, lock):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    api.dependency_overrides[get_db] = override_get_db
    api.dependency_overrides[get_gateway_client] = lambda: gateway
    api.dependency_overrides[get_checkout_lock] = lambda: lock

    transport = httpx.ASGITransport(app=api)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    api.dependency_overrides.clear()


def signed(payload: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    """Body and headers of a webhook delivery signed with `secret`."""
    body = json.dumps(payload).encode()
    headers = {
        "x-payload-signature": sign_payload(secret, body),
        "content-type": "application/json",
    }
    return body, headers
