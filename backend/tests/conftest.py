"""
Pytest fixtures for test database, Redis, clock, email, gateway and client.

Each test gets a fresh in-memory SQLite database and a fresh fake Redis, so
tests never share state. Time only moves when a test advances the clock.
"""

import hashlib
import hmac
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

import fakeredis
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from ticketflow.main import app
from ticketflow.api import deps
from ticketflow.core.config import Settings, get_settings
from ticketflow.db.base import Base
from ticketflow.db.session import get_db
from ticketflow.models.user import User
from ticketflow.services import credential_store
from ticketflow.services.auth_service import ClientInfo, SessionManager
from ticketflow.services.email_service import AuthMailer, InMemoryEmailSender
from ticketflow.services.interfaces.payment_gateway import (
    GatewayOutcome,
    GatewayResult,
    PaymentGateway,
    WebhookEvent,
)
from ticketflow.services.order_ledger import OrderLedger
from ticketflow.services.payment_service import PaymentOrchestrator
from ticketflow.services.recovery_service import CredentialRecovery
from ticketflow.services.session_store import SessionMirror
from ticketflow.services.stripe_gateway import StripeGateway
from ticketflow.services.token_service import TokenIssuer
from ticketflow.core.security import hash_password

TEST_DATABASE_URL = "sqlite+aiosqlite://"
WEBHOOK_SECRET = "whsec_test_secret"
PASSWORD = "ValidPass123!"


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class FakeClock:
    """Injectable clock; naive UTC like the production clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """
    Scripted gateway. Each call pops the next queued result for its
    operation, falling back to success. Webhook verification goes through
    the real Stripe verifier.
    """

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.calls: list[tuple[str, dict]] = []
        self.queued: dict[str, list[GatewayResult]] = {}
        self._verifier = StripeGateway("sk_test_unused", webhook_secret)
        self._intents = 0

    def queue(self, operation: str, result: GatewayResult) -> None:
        self.queued.setdefault(operation, []).append(result)

    def _next(self, operation: str, default: GatewayResult) -> GatewayResult:
        pending = self.queued.get(operation)
        if pending:
            return pending.pop(0)
        return default

    def calls_to(self, operation: str) -> list[dict]:
        return [params for name, params in self.calls if name == operation]

    async def create_charge(self, **params) -> GatewayResult:
        self.calls.append(("create_charge", params))
        self._intents += 1
        return self._next(
            "create_charge",
            GatewayResult(
                outcome=GatewayOutcome.SUCCEEDED,
                payment_intent_id=f"pi_test_{self._intents}",
                transaction_id=f"ch_test_{self._intents}",
                gateway_status="succeeded",
            ),
        )

    async def retrieve_charge(self, payment_intent_id: str) -> GatewayResult:
        self.calls.append(("retrieve_charge", {"payment_intent_id": payment_intent_id}))
        return self._next(
            "retrieve_charge",
            GatewayResult(
                outcome=GatewayOutcome.SUCCEEDED,
                payment_intent_id=payment_intent_id,
                gateway_status="succeeded",
            ),
        )

    async def cancel_charge(self, payment_intent_id: str) -> GatewayResult:
        self.calls.append(("cancel_charge", {"payment_intent_id": payment_intent_id}))
        return self._next(
            "cancel_charge",
            GatewayResult(
                outcome=GatewayOutcome.SUCCEEDED,
                payment_intent_id=payment_intent_id,
                gateway_status="canceled",
            ),
        )

    async def create_refund(self, **params) -> GatewayResult:
        self.calls.append(("create_refund", params))
        return self._next(
            "create_refund",
            GatewayResult(
                outcome=GatewayOutcome.SUCCEEDED,
                payment_intent_id=params["payment_intent_id"],
                transaction_id=f"re_test_{len(self.calls_to('create_refund'))}",
                gateway_status="succeeded",
            ),
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        return self._verifier.parse_webhook(payload, signature)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        SECRET_KEY="test-secret-key",
        REDIS_ENABLED=False,
        EMAIL_BACKEND="memory",
        STRIPE_API_KEY="sk_test_unused",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        SERVICE_FEE_RATE=Decimal("0"),
        TAX_RATE=Decimal("0"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables in a fresh in-memory database, yield a session, dispose."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def outbox() -> list[dict]:
    return []


@pytest.fixture
def email_sender(outbox) -> InMemoryEmailSender:
    return InMemoryEmailSender(outbox)


@pytest.fixture
def mailer(email_sender, settings) -> AuthMailer:
    return AuthMailer(email_sender, settings)


@pytest.fixture
def issuer(settings, clock) -> TokenIssuer:
    return TokenIssuer(
        secret_key=settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
        issuer=settings.TOKEN_ISSUER,
        audience=settings.TOKEN_AUDIENCE,
        short_lifetime=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        long_lifetime=timedelta(days=settings.REMEMBER_ME_EXPIRE_DAYS),
        clock=clock,
    )


@pytest.fixture
def mirror(redis_client, settings) -> SessionMirror:
    return SessionMirror(redis_client, settings.SESSION_KEY_PREFIX)


@pytest.fixture
def sessions(db_session, mirror, issuer, mailer, settings, clock) -> SessionManager:
    return SessionManager(db_session, mirror=mirror, issuer=issuer, mailer=mailer, settings=settings, clock=clock)


@pytest.fixture
def recovery(db_session, sessions, mailer, settings, clock) -> CredentialRecovery:
    return CredentialRecovery(db_session, sessions=sessions, mailer=mailer, settings=settings, clock=clock)


@pytest.fixture
def ledger(db_session, settings, clock) -> OrderLedger:
    return OrderLedger(db_session, settings=settings, clock=clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def payments(db_session, ledger, gateway, clock) -> PaymentOrchestrator:
    return PaymentOrchestrator(db_session, ledger=ledger, gateway=gateway, clock=clock)


@pytest.fixture
def client_info() -> ClientInfo:
    return ClientInfo(ip_address="203.0.113.7", user_agent="pytest-agent/1.0")


async def create_user(
    db: AsyncSession,
    email: str = "user@example.com",
    password: str = PASSWORD,
    verified: bool = True,
) -> User:
    user = await credential_store.create(
        db,
        email=email,
        password_hash=hash_password(password),
        first_name="Test",
        last_name="User",
    )
    if verified:
        await credential_store.set_email_verified(db, user.id)
    await db.commit()
    return await credential_store.find_by_id(db, user.id)


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """A verified user with password PASSWORD."""
    return await create_user(db_session)


@pytest_asyncio.fixture
async def auth_token(sessions: SessionManager, test_user: User, client_info: ClientInfo) -> str:
    result = await sessions.login(test_user.email, PASSWORD, client_info)
    return result.access_token


@pytest_asyncio.fixture
async def auth_headers(auth_token: str) -> dict:
    """Authorization headers with Bearer token."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session, settings, clock, mirror, email_sender, issuer, gateway,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client wired to the same database, Redis, clock and fakes as the fixtures."""

    async def override_get_db():
        yield db_session

    async def override_get_session_mirror():
        return mirror

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[deps.get_clock] = lambda: clock
    app.dependency_overrides[deps.get_session_mirror] = override_get_session_mirror
    app.dependency_overrides[deps.get_email_sender] = lambda: email_sender
    app.dependency_overrides[deps.get_token_issuer] = lambda: issuer
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
