"""
FastAPI dependencies: process-wide collaborators and per-request services.

Collaborators that hold secrets or connections (token issuer, email sender,
payment gateway) are built once per process. Services are built per request
around the request's database session.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.clock import Clock, utcnow
from ticketflow.core.config import Settings, get_settings
from ticketflow.core.exceptions import Unauthorized
from ticketflow.db.session import get_db
from ticketflow.models.user import User
from ticketflow.services.auth_service import ClientInfo, SessionManager
from ticketflow.services.email_service import AuthMailer, EmailSender, build_email_sender
from ticketflow.services.gateway_factory import get_gateway
from ticketflow.services.interfaces.payment_gateway import PaymentGateway
from ticketflow.services.order_ledger import OrderLedger
from ticketflow.services.payment_service import PaymentOrchestrator
from ticketflow.services.recovery_service import CredentialRecovery
from ticketflow.services.session_store import SessionMirror, get_redis
from ticketflow.services.token_service import TokenIssuer

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


@lru_cache()
def get_token_issuer() -> TokenIssuer:
    settings = get_settings()
    return TokenIssuer(
        secret_key=settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
        issuer=settings.TOKEN_ISSUER,
        audience=settings.TOKEN_AUDIENCE,
        short_lifetime=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        long_lifetime=timedelta(days=settings.REMEMBER_ME_EXPIRE_DAYS),
    )


@lru_cache()
def get_email_sender() -> EmailSender:
    return build_email_sender(get_settings())


def get_clock() -> Clock:
    return utcnow


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


def get_mailer(
    sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_settings),
) -> AuthMailer:
    return AuthMailer(sender, settings)


async def get_session_mirror(settings: Settings = Depends(get_settings)) -> SessionMirror:
    return SessionMirror(await get_redis(), settings.SESSION_KEY_PREFIX)


def get_session_manager(
    db: AsyncSession = Depends(get_db),
    mirror: SessionMirror = Depends(get_session_mirror),
    issuer: TokenIssuer = Depends(get_token_issuer),
    mailer: AuthMailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> SessionManager:
    return SessionManager(db, mirror=mirror, issuer=issuer, mailer=mailer, settings=settings, clock=clock)


def get_credential_recovery(
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    mailer: AuthMailer = Depends(get_mailer),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> CredentialRecovery:
    return CredentialRecovery(db, sessions=sessions, mailer=mailer, settings=settings, clock=clock)


def get_order_ledger(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> OrderLedger:
    return OrderLedger(db, settings=settings, clock=clock)


def get_payment_orchestrator(
    db: AsyncSession = Depends(get_db),
    ledger: OrderLedger = Depends(get_order_ledger),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, ledger=ledger, gateway=gateway, clock=clock)


def get_client_info(request: Request) -> ClientInfo:
    """Client IP and User-Agent as resolved by the request middleware."""
    client_info: Optional[ClientInfo] = getattr(request.state, "client_info", None)
    return client_info or ClientInfo()


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Not authenticated")
    return credentials.credentials


async def get_current_user(
    token: str = Depends(get_bearer_token),
    sessions: SessionManager = Depends(get_session_manager),
) -> User:
    return await sessions.validate(token)
