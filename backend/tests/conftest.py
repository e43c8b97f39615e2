"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test (aiosqlite), so no Docker needed.
"""
import os
import uuid as uuid_module

# Set test environment before any imports
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_BASE_URL"] = "https://api.veoreel.test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_BASIC"] = "price_basic_test"
os.environ["STRIPE_PRICE_PRO"] = "price_pro_test"
os.environ["KIE_API_KEY"] = "kie-test-key"

import asyncio
import hashlib
import hmac
import json
import time
import pytest
from typing import AsyncGenerator, List, Optional
from unittest.mock import MagicMock

from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.models.base import Base
from app.models.user import User
from app.models.credit_ledger import LedgerReason
from app.ai.prompt_refiner import PromptRefiner
from app.services.credit_service import CreditService
from app.services.polling_registry import PollingRegistry
from app.services.provider_gateway import KieGateway, StatusResult, SubmitResult, ProviderError
from app.services.reconciler import CompletionReconciler


class FakeGateway:
    """
    In-memory stand-in for KieGateway.

    fetch_status returns queued results in order (the last one repeats).
    Set `release` to an asyncio.Event to hold fetch_status in flight.
    """

    def __init__(self):
        self.submit_calls: List[dict] = []
        self.status_calls: List[str] = []
        self.submit_result = SubmitResult(task_id="kie_task_1", run_id="run_1")
        self.submit_error: Optional[ProviderError] = None
        self.status_results: List[StatusResult] = []
        self.status_error: Optional[ProviderError] = None
        self.fetch_started = asyncio.Event()
        self.release: Optional[asyncio.Event] = None

    async def submit(self, prompt, aspect_ratio, seeds, callback_url) -> SubmitResult:
        self.submit_calls.append({
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "seeds": seeds,
            "callback_url": callback_url,
        })
        if self.submit_error:
            raise self.submit_error
        return self.submit_result

    async def fetch_status(self, task_id: str) -> StatusResult:
        self.status_calls.append(task_id)
        self.fetch_started.set()
        if self.release is not None:
            await self.release.wait()
        if self.status_error:
            raise self.status_error
        if not self.status_results:
            return StatusResult()
        if len(self.status_results) > 1:
            return self.status_results.pop(0)
        return self.status_results[0]

    parse_callback = staticmethod(KieGateway.parse_callback)

    async def aclose(self):
        pass


def sign_stripe_payload(payload: str, secret: Optional[str] = None, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header using Stripe's v1 scheme: HMAC-SHA256 of '{t}.{payload}'."""
    secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_stripe_event(event_id: str, event_type: str, data_object: dict) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    })


def make_callback(task_id: str, code: int = 200, urls: Optional[List[str]] = None, msg: str = "success") -> dict:
    info = {"resultUrls": urls, "resolution": "1080p"} if urls is not None else None
    return {
        "code": code,
        "msg": msg,
        "data": {"taskId": task_id, "info": info, "fallbackFlag": False},
    }


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until predicate() is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture(scope="function")
async def db_engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


async def create_user(db: AsyncSession, credits: int, email: str = "test@example.com") -> User:
    """User whose starting balance is backed by a ledger entry."""
    user = User(
        id=str(uuid_module.uuid4()),
        firebase_uid=f"firebase-test-uid-{uuid_module.uuid4().hex[:8]}",
        email=email,
        credits_remaining=0,
    )
    db.add(user)
    await db.commit()
    if credits > 0:
        await CreditService.grant(db, user.id, credits, LedgerReason.PROMO)
    await db.refresh(user)
    return user


@pytest.fixture(scope="function")
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user with 10 credits."""
    return await create_user(db_session, 10)


@pytest.fixture(scope="function")
async def test_user_one_credit(db_session: AsyncSession) -> User:
    """Create a test user with exactly one credit."""
    return await create_user(db_session, 1, email="one@example.com")


@pytest.fixture(scope="function")
async def test_user_no_credits(db_session: AsyncSession) -> User:
    """Create a test user with no credits."""
    return await create_user(db_session, 0, email="nocredits@example.com")


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def registry() -> AsyncGenerator[PollingRegistry, None]:
    """Zero-interval registry with a 3 attempt ceiling."""
    registry = PollingRegistry(interval_seconds=0, max_attempts=3)
    yield registry
    await registry.drain()


@pytest.fixture
def reconciler(session_factory, fake_gateway, registry) -> CompletionReconciler:
    return CompletionReconciler(session_factory, fake_gateway, registry)


def get_test_app(session_factory, user: User, gateway, reconciler) -> FastAPI:
    """Create a test FastAPI app with overridden dependencies."""
    from app.main import app
    from app.database import get_db
    from app.auth.dependencies import get_current_user
    from app.api.dependencies import get_provider_gateway, get_reconciler, get_prompt_refiner

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_current_user():
        return user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_provider_gateway] = lambda: gateway
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_prompt_refiner] = lambda: PromptRefiner(client=MagicMock())

    return app


@pytest.fixture(scope="function")
async def client(session_factory, test_user, fake_gateway, reconciler) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    app = get_test_app(session_factory, test_user, fake_gateway, reconciler)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def client_no_credits(session_factory, test_user_no_credits, fake_gateway, reconciler) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for user with no credits."""
    app = get_test_app(session_factory, test_user_no_credits, fake_gateway, reconciler)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
