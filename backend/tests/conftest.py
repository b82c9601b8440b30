"""
Pytest fixtures for billing pipeline tests.

Banco: SQLite em memoria (aiosqlite + StaticPool). Redis: FakeRedis com
SET NX EX, compare-and-delete e relogio manual para expirar leases.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import billsync.models  # noqa: F401
from billsync.core.database import Base
from billsync.models.payment import Payment
from billsync.models.subscription import Subscription
from billsync.models.subscription_history import SubscriptionHistory
from billsync.models.user import User
from billsync.services.event_router import EventRouter
from billsync.services.idempotency_guard import IdempotencyGuard
from billsync.services.leases import AdvisoryLock, SingleFlight
from billsync.services.notifications import SubscriptionNotification
from billsync.services.reconciliation_service import ReconciliationService
from billsync.services.retry_scheduler import RetryScheduler
from billsync.services.signature_verifier import WebhookSignatureVerifier
from billsync.services.subscription_state_machine import SubscriptionStateMachine
from billsync.services.webhook_event_service import RawWebhookRequest, WebhookEventService
from billsync.services.webhook_processor import WebhookProcessor

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_TO_PLAN = {
    "price_pro_monthly": "pro_monthly",
    "price_pro_yearly": "pro_yearly",
    "price_max_monthly": "max_monthly",
    "price_max_yearly": "max_yearly",
}

START = datetime(2026, 3, 2, 12, 0, 0)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeRedis:
    """
    Minimal async Redis stub for lease tests (SET NX EX + compare-and-delete).
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, Optional[float]]] = {}
        self.now = 0.0

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _live(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.now:
            del self._store[key]
            return None
        return value

    async def set(
        self,
        key: str,
        value: str,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> Optional[bool]:
        if nx and self._live(key) is not None:
            return None
        self._store[key] = (value, self.now + ex if ex else None)
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def delete(self, key: str) -> int:
        return 1 if self._store.pop(key, None) is not None else 0

    async def eval(self, _script: str, _numkeys: int, key: str, token: str) -> int:
        if self._live(key) == token:
            del self._store[key]
            return 1
        return 0

    async def aclose(self) -> None:
        return None


class FrozenClock:
    """Injectable clock; ``advance`` moves time forward."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[SubscriptionNotification] = []

    async def notify(self, notification: SubscriptionNotification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind.value for n in self.sent]


class FakeProvider:
    """In-memory stand-in for the Stripe client."""

    def __init__(self) -> None:
        self.customers: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        self.calls.append(("customer", customer_id))
        return self.customers.get(customer_id, {"id": customer_id, "metadata": {}})

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        self.calls.append(("subscription", subscription_id))
        return self.subscriptions.get(subscription_id, {"id": subscription_id, "items": {"data": []}})


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header (``t=...,v1=hmac_sha256(t.payload)``)."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{body.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def signed_request(payload: dict[str, Any], secret: str = WEBHOOK_SECRET) -> RawWebhookRequest:
    body = json.dumps(payload).encode("utf-8")
    return RawWebhookRequest(
        body=body,
        headers={"Stripe-Signature": sign(body, secret), "Content-Type": "application/json"},
        source_ip="127.0.0.1",
        user_agent="Stripe/1.0 (+https://stripe.com/docs/webhooks)",
    )


def event_payload(event_id: str, event_type: str, data_object: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }


def checkout_event(
    event_id: str,
    user_id: UUID,
    *,
    plan: str = "pro_monthly",
    customer: str = "cus_test",
    subscription: str = "sub_test",
) -> dict[str, Any]:
    return event_payload(event_id, "checkout.session.completed", {
        "id": f"cs_{event_id}",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "subscription": subscription,
        "metadata": {"userId": str(user_id), "plan": plan},
    })


def subscription_event(
    event_id: str,
    event_type: str = "customer.subscription.updated",
    *,
    subscription: str = "sub_test",
    customer: str = "cus_test",
    status: str = "active",
    price: str = "price_pro_monthly",
    cancel_at_period_end: bool = False,
    metadata: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    return event_payload(event_id, event_type, {
        "id": subscription,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [{"price": {"id": price}}]},
        "metadata": metadata or {},
    })


def invoice_event(
    event_id: str,
    event_type: str = "invoice.payment_succeeded",
    *,
    invoice: str = "in_test",
    subscription: str = "sub_test",
    customer: str = "cus_test",
    price: Optional[str] = "price_pro_monthly",
    amount: int = 2900,
) -> dict[str, Any]:
    lines = {"data": [{"price": {"id": price}}]} if price else {"data": []}
    return event_payload(event_id, event_type, {
        "id": invoice,
        "object": "invoice",
        "subscription": subscription,
        "customer": customer,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "attempt_count": 1,
        "hosted_invoice_url": f"https://invoice.stripe.com/{invoice}",
        "lines": lines,
    })


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


async def add_user(
    db: AsyncSession,
    email: str = "player@example.com",
    *,
    customer_id: Optional[str] = None,
) -> User:
    entity = User(
        id=uuid4(),
        email=email,
        full_name="Test Player",
        provider_customer_id=customer_id,
        created_at=START,
        updated_at=START,
    )
    db.add(entity)
    await db.commit()
    return entity


@pytest_asyncio.fixture
async def user(db: AsyncSession) -> User:
    return await add_user(db)


async def add_subscription(
    db: AsyncSession,
    user_id: UUID,
    *,
    plan: str = "pro_monthly",
    status: str = "active",
    period_end: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = False,
    provider_subscription_id: Optional[str] = None,
    updated_at: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
) -> Subscription:
    now = created_at or START
    sub = Subscription(
        user_id=user_id,
        plan=plan,
        status=status,
        provider_subscription_id=provider_subscription_id,
        current_period_start=now - timedelta(days=30),
        current_period_end=period_end or now + timedelta(days=10),
        cancel_at_period_end=cancel_at_period_end,
        created_at=now,
        updated_at=updated_at or now,
    )
    db.add(sub)
    await db.commit()
    return sub


async def subscriptions_for(db: AsyncSession, user_id: UUID) -> list[Subscription]:
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(stmt)).scalars().all())


async def history_for(db: AsyncSession, user_id: UUID) -> list[SubscriptionHistory]:
    stmt = select(SubscriptionHistory).where(SubscriptionHistory.user_id == user_id)
    return list((await db.execute(stmt)).scalars().all())


async def payments_for(db: AsyncSession, user_id: UUID) -> list[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def events(clock: FrozenClock) -> WebhookEventService:
    return WebhookEventService(max_retries=3, clock=clock, environment="test")


@pytest.fixture
def guard(events: WebhookEventService, clock: FrozenClock) -> IdempotencyGuard:
    return IdempotencyGuard(events, dedup_window_seconds=60, clock=clock)


@pytest.fixture
def machine(
    guard: IdempotencyGuard,
    redis: FakeRedis,
    provider: FakeProvider,
    clock: FrozenClock,
) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(
        guard=guard,
        locks=AdvisoryLock(redis, ttl_seconds=30, wait_seconds=0),
        provider=provider,
        price_to_plan=PRICE_TO_PLAN,
        clock=clock,
    )


@pytest.fixture
def make_processor(
    events: WebhookEventService,
    guard: IdempotencyGuard,
    machine: SubscriptionStateMachine,
    redis: FakeRedis,
    notifier: RecordingNotifier,
    clock: FrozenClock,
):
    def _make(
        router: Optional[EventRouter] = None,
        timeout: float = 5.0,
    ) -> WebhookProcessor:
        return WebhookProcessor(
            verifier=WebhookSignatureVerifier(WEBHOOK_SECRET),
            events=events,
            router=router or EventRouter.for_state_machine(machine),
            guard=guard,
            retries=RetryScheduler(base_minutes=5, clock=clock),
            notifier=notifier,
            single_flight=SingleFlight(redis),
            handler_timeout_seconds=timeout,
        )

    return _make


@pytest.fixture
def processor(make_processor) -> WebhookProcessor:
    return make_processor()


@pytest.fixture
def reconciliation(
    guard: IdempotencyGuard,
    redis: FakeRedis,
    notifier: RecordingNotifier,
    clock: FrozenClock,
) -> ReconciliationService:
    return ReconciliationService(
        guard=guard,
        locks=AdvisoryLock(redis, ttl_seconds=30, wait_seconds=0),
        single_flight=SingleFlight(redis),
        notifier=notifier,
        clock=clock,
        expiry_warning_days=3,
        past_due_grace_days=7,
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    db: AsyncSession,
    redis: FakeRedis,
    processor: WebhookProcessor,
    events: WebhookEventService,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client with dependency overrides.
    """
    from billsync.core import dependencies
    from billsync.core.config import settings
    from billsync.core.database import get_db
    from billsync.core.redis import get_redis
    from billsync.main import app

    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "test-admin-token")

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db

    async def override_get_redis() -> AsyncGenerator[FakeRedis, None]:
        yield redis

    async def override_get_processor() -> WebhookProcessor:
        return processor

    async def override_get_events() -> WebhookEventService:
        return events

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[dependencies.get_webhook_processor] = override_get_processor
    app.dependency_overrides[dependencies.get_webhook_event_service] = override_get_events

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as async_client:
        yield async_client

    app.dependency_overrides.clear()
