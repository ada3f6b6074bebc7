"""Shared test fixtures for all test groups.

Every test gets an in-memory SQLite ledger, a fakeredis instance and a
provider client wired to an in-process fake of the provider REST API.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import fakeredis.aioredis
import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.db.base as db_mod
import app.db.redis as redis_mod
from app.core.config import get_settings
from app.db.base import Base, build_engine
from app.db.models import Order, Subscription
from app.integrations.provider import ProviderClient
from app.services.ledger_store import LedgerStore
from app.services.notifications import NotificationDispatcher
from app.services.reconciler import Reconciler

PROVIDER_URL = "https://provider.test"
PROVIDER_TOKEN = "test-access-token"
WEBHOOK_SECRET = "whsec-test"
ADMIN_TOKEN = "admin-test-token"


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    """Deterministic settings for every test; nothing is read from a real .env."""
    env = {
        "ENVIRONMENT": "test",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "PROVIDER_BASE_URL": PROVIDER_URL,
        "PROVIDER_ACCESS_TOKEN": PROVIDER_TOKEN,
        "PROVIDER_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "PROVIDER_MAX_ATTEMPTS": "2",
        "PROVIDER_MAX_CONCURRENCY": "1",
        "WEBHOOK_SIGNATURE_REQUIRED": "true",
        "ADMIN_API_TOKEN": ADMIN_TOKEN,
        "METRICS_ENABLED": "false",
        "SYNC_ENABLED": "false",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def session_factory():
    """Fresh in-memory ledger; also installed as the global session factory."""
    import app.db.models  # noqa: F401

    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    db_mod._engine = engine
    db_mod._session_factory = factory

    yield factory

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    redis_mod._redis = client
    yield client
    redis_mod._redis = None
    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(session_factory) -> LedgerStore:
    return LedgerStore(session_factory)


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-process stand-in for the provider REST API, served via httpx.MockTransport.

    Resources are plain dicts shaped like the provider's JSON. ``fail_with``
    maps a resource id to an HTTP status or an exception to raise for every
    request touching it.
    """

    def __init__(self) -> None:
        self.payments: dict[str, dict[str, Any]] = {}
        self.preapprovals: dict[str, dict[str, Any]] = {}
        self.authorized_payments: dict[str, dict[str, Any]] = {}
        self.fail_with: dict[str, int | Exception] = {}
        self.requests: list[httpx.Request] = []

    # -- seeding helpers --

    def add_payment(self, payment_id: str, status: str, external_reference: str | None = None, **extra) -> dict:
        payment = {
            "id": int(payment_id) if payment_id.isdigit() else payment_id,
            "status": status,
            "external_reference": external_reference,
            "transaction_amount": 49.9,
            "date_created": "2025-01-01T10:00:00.000-03:00",
            **extra,
        }
        self.payments[payment_id] = payment
        return payment

    def add_preapproval(self, preapproval_id: str, status: str, external_reference: str | None = None, **extra) -> dict:
        preapproval = {
            "id": preapproval_id,
            "status": status,
            "external_reference": external_reference,
            "payer_email": "payer@example.com",
            "date_created": "2025-01-01T09:00:00.000-03:00",
            "auto_recurring": {"frequency": 1, "frequency_type": "months", "transaction_amount": 29.9},
            **extra,
        }
        self.preapprovals[preapproval_id] = preapproval
        return preapproval

    def add_authorized_payment(self, authorized_id: str, preapproval_id: str, status: str = "processed") -> dict:
        authorized = {"id": int(authorized_id), "preapproval_id": preapproval_id, "status": status}
        self.authorized_payments[authorized_id] = authorized
        return authorized

    def calls_to(self, path_fragment: str) -> int:
        return sum(1 for r in self.requests if path_fragment in r.url.path)

    # -- transport --

    def _maybe_fail(self, resource_id: str, request: httpx.Request) -> httpx.Response | None:
        failure = self.fail_with.get(resource_id)
        if failure is None:
            return None
        if isinstance(failure, Exception):
            raise failure
        return httpx.Response(failure, json={"message": "forced failure"}, request=request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {PROVIDER_TOKEN}":
            return httpx.Response(401, json={"message": "unauthorized"})

        path = request.url.path
        params = request.url.params

        if path == "/v1/payments/search":
            ref = params.get("external_reference")
            failed = self._maybe_fail(ref, request)
            if failed is not None:
                return failed
            results = [p for p in self.payments.values() if p.get("external_reference") == ref]
            results.sort(key=lambda p: p.get("date_created") or "", reverse=True)
            return httpx.Response(200, json={"results": results, "paging": {"total": len(results)}})

        if path == "/preapproval/search":
            ref = params.get("external_reference")
            failed = self._maybe_fail(ref, request)
            if failed is not None:
                return failed
            results = [p for p in self.preapprovals.values() if p.get("external_reference") == ref]
            return httpx.Response(200, json={"results": results, "paging": {"total": len(results)}})

        for prefix, table in (
            ("/v1/payments/", self.payments),
            ("/preapproval/", self.preapprovals),
            ("/authorized_payments/", self.authorized_payments),
        ):
            if path.startswith(prefix):
                resource_id = path[len(prefix):]
                failed = self._maybe_fail(resource_id, request)
                if failed is not None:
                    return failed
                resource = table.get(resource_id)
                if resource is None:
                    return httpx.Response(404, json={"message": "not found"})
                if request.method == "PUT":
                    resource.update(json.loads(request.content))
                return httpx.Response(200, json=resource)

        return httpx.Response(404, json={"message": "no route"})


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider(fake_provider) -> ProviderClient:
    return ProviderClient(
        access_token=PROVIDER_TOKEN,
        base_url=PROVIDER_URL,
        max_attempts=2,
        retry_wait_multiplier=0,
        transport=httpx.MockTransport(fake_provider.handler),
    )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []

    async def send(self, event: str, payload: dict) -> None:
        self.sent.append((event, payload))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier=notifier)


@pytest.fixture
def reconciler(store, provider, notifications) -> Reconciler:
    return Reconciler(store, provider, notifications)


# ---------------------------------------------------------------------------
# Ledger row factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_order(session_factory):
    async def _make(correlation_key: str = "ORD-1001", **fields) -> Order:
        now = datetime.now(UTC)
        values = {
            "correlation_key": correlation_key,
            "user_id": "user-1",
            "status": "pending",
            "payment_status": "pending",
            "total": Decimal("49.90"),
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        async with session_factory() as session:
            order = Order(**values)
            session.add(order)
            await session.commit()
            await session.refresh(order)
            return order

    return _make


@pytest.fixture
def make_subscription(session_factory):
    async def _make(correlation_key: str = "SUB-user-1-plan1-0a1b2c3d", **fields) -> Subscription:
        now = datetime.now(UTC)
        values = {
            "correlation_key": correlation_key,
            "user_id": "user-1",
            "product_id": "plan1",
            "status": "pending",
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        async with session_factory() as session:
            sub = Subscription(**values)
            session.add(sub)
            await session.commit()
            await session.refresh(sub)
            return sub

    return _make
