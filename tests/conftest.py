"""
Test fixtures for the Payments API test suite.

Shared fixtures:

  - test_settings: Settings tuned for tests (fake provider, no backoff delay)
  - db_engine / session_factory / db_session: fresh file-backed SQLite per test
  - fake_provider / providers: scriptable provider double
  - catalog: the default payable target catalog
  - worker_pool: a WorkerPool wired to all of the above; tests call
    `await worker_pool.drain()` to run every due job
  - member / admin / other_member: users created directly in the database
  - reservation / invoice: payable records
  - client: async HTTP test client with every service dependency overridden
  - member_headers / admin_headers / other_member_headers: bearer tokens
    obtained through the real signup and login endpoints
  - running_worker: runs the worker pool in the background while a test
    drives the HTTP API (POST /payments waits for the intent)

Key design decisions:
  - A file-backed SQLite database (not :memory:) is used because the API,
    the worker pool and the polling in POST /payments each open their own
    connections and must all see the same data.
  - Required settings are put in the environment before the app is
    imported, since Settings is loaded once at import time.
"""

import asyncio
import hashlib
import hmac
import itertools
import json
import os
import uuid
from collections import defaultdict

from cryptography.fernet import Fernet

os.environ.setdefault("SECRET_KEY", "test-secret-key-do-not-use-in-production")
os.environ.setdefault("SECRET_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["ENVIRONMENT"] = "test"

import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.catalog import build_default_catalog  # noqa: E402
from app.config import get_settings, settings  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.dependencies import get_catalog, get_session_factory  # noqa: E402
from app.exceptions import PaymentsAPIError  # noqa: E402
from app.main import app  # noqa: E402
from app.models.invoice import Invoice  # noqa: E402
from app.models.reservation import Reservation  # noqa: E402
from app.models.user import User, UserType  # noqa: E402
from app.providers import get_provider_registry  # noqa: E402
from app.providers.base import (  # noqa: E402
    CaptureResult,
    IntentResult,
    PaymentProvider,
    RefundResult,
    SignatureVerificationError,
    VerifiedEvent,
    parse_event_payload,
)
from app.security import hash_password  # noqa: E402
from app.services.job_store import RetryPolicy  # noqa: E402
from app.workers.handlers import build_job_handlers  # noqa: E402
from app.workers.pool import WorkerPool  # noqa: E402


# ---------------------------------------------------------------------------
# Provider test double
# ---------------------------------------------------------------------------

class FakeProvider(PaymentProvider):
    """
    In-memory provider.

    - Intents and refunds are keyed by idempotency key, like a real provider
      replaying the original response.
    - fail_next(method, *errors) makes the next calls of `method` raise.
    - Webhook signatures are HMAC-SHA256 of the raw body; sign_event()
      builds a payload and its header.
    """

    name = "fake"
    signature_header = "X-Fake-Signature"

    def __init__(self, secret: str = "fake-webhook-secret"):
        self.secret = secret
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.refund_status = "succeeded"
        self.intents: dict[str, IntentResult] = {}
        self.refunds: dict[str, RefundResult] = {}
        self._ids = itertools.count(1)

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.failures[method].extend(errors)

    def calls_to(self, method: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _call(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def create_intent(self, amount_cents, currency, capture_mode, metadata, *,
                            idempotency_key, description=None):
        self._call("create_intent", amount_cents=amount_cents, currency=currency,
                   capture_mode=capture_mode, metadata=metadata,
                   idempotency_key=idempotency_key, description=description)
        if idempotency_key not in self.intents:
            n = next(self._ids)
            reference = f"pi_fake{n}"
            self.intents[idempotency_key] = IntentResult(
                provider_reference=reference,
                client_secret=f"{reference}_secret_fake{n}",
                status="requires_payment_method",
            )
        return self.intents[idempotency_key]

    async def capture_intent(self, provider_reference, *, idempotency_key):
        self._call("capture_intent", provider_reference=provider_reference,
                   idempotency_key=idempotency_key)
        return CaptureResult(provider_reference=provider_reference, status="succeeded")

    async def cancel_intent(self, provider_reference, *, idempotency_key):
        self._call("cancel_intent", provider_reference=provider_reference,
                   idempotency_key=idempotency_key)
        return True

    async def create_refund(self, provider_reference, amount_cents, *, reason, idempotency_key):
        self._call("create_refund", provider_reference=provider_reference,
                   amount_cents=amount_cents, reason=reason, idempotency_key=idempotency_key)
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = RefundResult(
                refund_reference=f"re_fake{next(self._ids)}", status=self.refund_status,
            )
        return self.refunds[idempotency_key]

    def sign(self, raw_payload: bytes) -> str:
        return hmac.new(self.secret.encode(), raw_payload, hashlib.sha256).hexdigest()

    def verify_signature(self, raw_payload, signature_header, *, received_at=None):
        if not signature_header or not hmac.compare_digest(signature_header, self.sign(raw_payload)):
            raise SignatureVerificationError("signature mismatch")
        identity = parse_event_payload(raw_payload)
        return VerifiedEvent(
            event_id=identity.event_id,
            event_type=identity.event_type,
            data=identity.payload.get("data", {}).get("object", {}),
        )

    def sign_event(self, event_type: str, obj: dict, *, event_id: str | None = None) -> tuple[bytes, str]:
        """Build a raw event body and a valid signature for it."""
        payload = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "type": event_type,
            "data": {"object": obj},
        }
        raw = json.dumps(payload).encode()
        return raw, self.sign(raw)


# ---------------------------------------------------------------------------
# Settings, database, workers
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_settings():
    return settings.model_copy(update={
        "PAYMENT_PROVIDER": "fake",
        "PAYMENT_CURRENCY": "USD",
        "PROCESSING_FEE_ENABLED": False,
        "INTENT_WAIT_TIMEOUT_SECONDS": 5.0,
        "INTENT_POLL_INTERVAL_SECONDS": 0.02,
        "JOB_MAX_ATTEMPTS": 5,
        "JOB_BACKOFF_BASE_SECONDS": 0.0,
        "JOB_BACKOFF_JITTER": 0.0,
        "WORKER_QUEUES": ["default"],
        "WORKER_CONCURRENCY": 1,
        "WORKER_POLL_INTERVAL_SECONDS": 0.01,
        "HOUSEKEEPING_INTERVAL_SECONDS": 3600.0,
        "MAX_WEBHOOK_BODY_BYTES": 64 * 1024,
    })


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Session for arranging and asserting; call commit() before running workers."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def fake_provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def providers(fake_provider):
    return {fake_provider.name: fake_provider}


@pytest_asyncio.fixture
async def catalog():
    return build_default_catalog()


@pytest_asyncio.fixture
async def worker_pool(session_factory, test_settings, catalog, providers):
    return WorkerPool(
        session_factory,
        build_job_handlers(),
        settings=test_settings,
        catalog=catalog,
        providers=providers,
        retry_policy=RetryPolicy(base_seconds=0, max_seconds=0, jitter=0),
        worker_id="test-worker",
    )


@pytest_asyncio.fixture
async def running_worker(worker_pool):
    """Run the pool in the background for the duration of the test."""
    stop = asyncio.Event()
    task = asyncio.create_task(worker_pool.run(stop))
    yield worker_pool
    stop.set()
    await asyncio.wait_for(task, timeout=5)


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------

async def _create_user(session_factory, email: str, user_type: UserType = UserType.MEMBER) -> User:
    async with session_factory() as session:
        user = User(
            email=email,
            hashed_password=hash_password("SecurePass123!"),
            full_name=email.split("@")[0].title(),
            user_type=user_type,
        )
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def member(session_factory):
    return await _create_user(session_factory, "member@example.com")


@pytest_asyncio.fixture
async def other_member(session_factory):
    return await _create_user(session_factory, "other@example.com")


@pytest_asyncio.fixture
async def admin(session_factory):
    return await _create_user(session_factory, "ops@example.com", UserType.ADMIN)


@pytest_asyncio.fixture
async def reservation(session_factory):
    async with session_factory() as session:
        record = Reservation(guest_name="Ada Lovelace", resource_name="Court 3")
        session.add(record)
        await session.commit()
        return record


@pytest_asyncio.fixture
async def invoice(session_factory):
    async with session_factory() as session:
        record = Invoice(number="INV-1001", customer_name="Grace Hopper")
        session.add(record)
        await session.commit()
        return record


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory, test_settings, catalog, providers):
    """
    Async HTTP test client with the test database and services injected.

    get_db mirrors the production dependency: commit on success and on
    domain errors, roll back otherwise.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except PaymentsAPIError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_provider_registry] = lambda: providers

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _signup(client, email: str, password: str) -> dict:
    response = await client.post(
        "/auth/signup",
        json={"email": email, "password": password, "full_name": "Test User"},
    )
    assert response.status_code == 201, f"Signup failed: {response.text}"
    return response.json()


@pytest_asyncio.fixture
async def member_headers(client):
    """Authorization header for a MEMBER registered through the signup endpoint."""
    data = await _signup(client, "testuser@example.com", "SecurePass123!")
    return {"Authorization": f"Bearer {data['token']}"}


@pytest_asyncio.fixture
async def other_member_headers(client):
    data = await _signup(client, "seconduser@example.com", "SecurePass456!")
    return {"Authorization": f"Bearer {data['token']}"}


@pytest_asyncio.fixture
async def admin_headers(client, session_factory):
    """
    Authorization header for an ADMIN.

    Signs up as a normal member, then promotes the user directly in the
    database: admins are provisioned by an operator, not self-service.
    """
    data = await _signup(client, "admin@example.com", "AdminPass123!")
    async with session_factory() as session:
        await session.execute(
            update(User)
            .where(User.id == uuid.UUID(data["user_id"]))
            .values(user_type=UserType.ADMIN)
        )
        await session.commit()

    login_response = await client.post(
        "/auth/login",
        json={"email": "admin@example.com", "password": "AdminPass123!"},
    )
    assert login_response.status_code == 200
    return {"Authorization": f"Bearer {login_response.json()['token']}"}
