"""
Session manager: login with lockout, logout, token validation, global logout.

SESSION MODEL
=============

A logical session has two projections:
  - a durable `user_sessions` row (source of truth, `is_active` flag)
  - a Redis mirror keyed by the same token hash (TTL-evicted accelerator)

Both are written by `_open_session` and cleared by `logout` /
`reset_all_sessions`. The durable row is committed first; a crash before the
mirror write leaves a session without a mirror, which is harmless because
validation never depends on the mirror.

Validation policy: a token is accepted only if its signature, issuer,
audience and expiry check out, its subject and email match the stored user,
AND an active, unexpired durable session exists for its hash. Logout and
password reset therefore take effect immediately instead of at token expiry.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.clock import Clock, utcnow
from ticketflow.core.config import Settings
from ticketflow.core.exceptions import Unauthorized
from ticketflow.core.logging import get_logger
from ticketflow.core.metrics import account_lockouts, record_login_attempt, record_session_operation
from ticketflow.core.security import fingerprint_token, verify_password
from ticketflow.models.user import User
from ticketflow.models.user_session import UserSession
from ticketflow.services import credential_store
from ticketflow.services.email_service import AuthMailer
from ticketflow.services.session_store import SessionMirror
from ticketflow.services.token_service import DurationClass, TokenIssuer

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_TOKEN = "Invalid or expired token"


@dataclass(frozen=True)
class ClientInfo:
    ip_address: str = "unknown"
    user_agent: str = "unknown"

    def describe(self) -> str:
        return f"IP: {self.ip_address}, User-Agent: {self.user_agent}"


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    expires_in: int
    user: User
    session_id: int


class SessionManager:
    def __init__(
        self,
        db: AsyncSession,
        *,
        mirror: SessionMirror,
        issuer: TokenIssuer,
        mailer: AuthMailer,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.mirror = mirror
        self.issuer = issuer
        self.mailer = mailer
        self.clock = clock
        self._token_key = settings.SECRET_KEY
        self._max_failed_attempts = settings.MAX_FAILED_LOGIN_ATTEMPTS
        self._lock_window = timedelta(minutes=settings.ACCOUNT_LOCK_MINUTES)

    def token_hash(self, token: str) -> str:
        return fingerprint_token(token, self._token_key)

    async def login(
        self,
        email: str,
        password: str,
        client: Optional[ClientInfo] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        """
        Authenticate and open a session.

        Order of checks: unknown email, active lock window, password, email
        verification. The lock check comes before the password so a locked
        account rejects even the correct password.
        """
        client = client or ClientInfo()
        now = self.clock()

        user = await credential_store.find_by_email(self.db, email)
        if user is None:
            record_login_attempt("bad_credentials")
            logger.warning("login_failed", reason="unknown_email")
            raise Unauthorized(INVALID_CREDENTIALS)

        if user.account_locked:
            unlock_at = (user.last_login_attempt or now) + self._lock_window
            if now < unlock_at:
                record_login_attempt("locked")
                logger.warning("login_rejected_locked", user_id=user.id, unlock_at=unlock_at.isoformat())
                raise Unauthorized("Account is temporarily locked. Please try again later.")
            await credential_store.reset_failed_attempts(self.db, user.id)
            await self.db.commit()
            logger.info("account_unlocked", user_id=user.id)

        if not verify_password(password, user.password_hash):
            await self._record_failed_attempt(user, now)
            record_login_attempt("bad_credentials")
            raise Unauthorized(INVALID_CREDENTIALS)

        if not user.email_verified:
            record_login_attempt("unverified")
            logger.warning("login_rejected_unverified", user_id=user.id)
            raise Unauthorized("Please verify your email before logging in")

        await credential_store.reset_failed_attempts(self.db, user.id)
        duration = DurationClass.LONG if remember_me else DurationClass.SHORT
        issued = self.issuer.issue(user, duration)
        session = await self._open_session(user, issued.token, issued.expires_at, client)

        record_login_attempt("success")
        logger.info("user_logged_in", user_id=user.id, session_id=session.id, remember_me=remember_me)
        return LoginResult(
            access_token=issued.token,
            expires_in=issued.expires_in,
            user=user,
            session_id=session.id,
        )

    async def _record_failed_attempt(self, user: User, now: datetime) -> None:
        result = await credential_store.increment_failed_attempts(
            self.db, user.id, now=now, threshold=self._max_failed_attempts
        )
        # Persist the count even though the caller is about to raise
        await self.db.commit()
        logger.warning("login_failed", reason="bad_password", user_id=user.id, attempts=result.attempts)

        # Exactly one attempt observes the crossing
        if result.locked and result.attempts == self._max_failed_attempts:
            account_lockouts.inc()
            logger.warning("account_locked", user_id=user.id, lock_minutes=int(self._lock_window.total_seconds() // 60))
            await self.mailer.send_account_locked(user.email, user.first_name)

    async def _open_session(
        self,
        user: User,
        token: str,
        expires_at: datetime,
        client: ClientInfo,
    ) -> UserSession:
        token_hash = self.token_hash(token)
        now = self.clock()
        session = UserSession(
            user_id=user.id,
            token_hash=token_hash,
            expires_at=expires_at,
            device_info=client.describe(),
            ip_address=client.ip_address,
            is_active=True,
            created_at=now,
        )
        self.db.add(session)
        await self.db.flush()
        await self.db.commit()

        await self.mirror.save(
            session_id=str(session.id),
            user_id=user.id,
            token_hash=token_hash,
            ttl_seconds=int((expires_at - now).total_seconds()),
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            email_verified=bool(user.email_verified),
            device_info=session.device_info,
            ip_address=session.ip_address,
            login_time=now,
            expires_at=expires_at,
        )
        record_session_operation("create")
        return session

    async def logout(self, token: str) -> None:
        """Revoke one session. Unknown or already-revoked tokens are a no-op."""
        token_hash = self.token_hash(token)
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.token_hash == token_hash, UserSession.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.mirror.delete_by_token_hash(token_hash)

        record_session_operation("revoke")
        logger.info("user_logged_out", sessions_revoked=result.rowcount)

    async def validate(self, token: str) -> User:
        """
        Resolve a bearer token to its user, or raise Unauthorized.

        Every failure raises the same message so callers cannot tell a bad
        signature from an expired token or a revoked session.
        """
        user_id = self.issuer.extract_user_id(token)
        if user_id is None:
            raise Unauthorized(INVALID_TOKEN)

        user = await credential_store.find_by_id(self.db, user_id)
        if user is None or not self.issuer.validate_against_user(token, user):
            logger.info("token_rejected", reason="user_mismatch")
            raise Unauthorized(INVALID_TOKEN)

        session = await self._find_active_session(token)
        if session is None or session.user_id != user.id:
            logger.info("token_rejected", reason="no_active_session", user_id=user.id)
            raise Unauthorized(INVALID_TOKEN)

        return user

    async def get_profile(self, token: str) -> User:
        return await self.validate(token)

    async def _find_active_session(self, token: str) -> Optional[UserSession]:
        result = await self.db.execute(
            select(UserSession)
            .where(
                UserSession.token_hash == self.token_hash(token),
                UserSession.is_active.is_(True),
                UserSession.expires_at > self.clock(),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def describe_session(self, token: str) -> dict:
        """Session details for the caller's token; mirror first, durable row as fallback."""
        user = await self.validate(token)
        mirrored = await self.mirror.find_by_token_hash(self.token_hash(token))
        if mirrored:
            return {
                "session_id": mirrored["session_id"],
                "user_id": mirrored["user_id"],
                "device_info": mirrored.get("device_info"),
                "ip_address": mirrored.get("ip_address"),
                "expires_at": datetime.fromisoformat(mirrored["expires_at"]),
            }

        session = await self._find_active_session(token)
        return {
            "session_id": str(session.id),
            "user_id": user.id,
            "device_info": session.device_info,
            "ip_address": session.ip_address,
            "expires_at": session.expires_at,
        }

    async def reset_all_sessions(self, user_id: int) -> int:
        """Log a user out everywhere: deactivate every durable row and clear the mirror."""
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.mirror.delete_by_user_id(user_id)

        record_session_operation("revoke_all")
        logger.info("all_sessions_revoked", user_id=user_id, sessions_revoked=result.rowcount)
        return result.rowcount

    async def purge_expired_sessions(self) -> int:
        result = await self.db.execute(
            delete(UserSession)
            .where(UserSession.expires_at <= self.clock())
            .execution_options(synchronize_session=False)
        )
        logger.info("expired_sessions_purged", count=result.rowcount)
        return result.rowcount
