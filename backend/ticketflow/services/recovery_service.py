"""
Registration, email verification and password reset.

TOKENS
======

Verification and reset tokens are opaque `secrets.token_urlsafe` strings.
Each user has at most one usable token of each kind: issuing a new one marks
every earlier unused one as used first.

RATE LIMITING
=============

Reset requests are limited by counting the user's reset-token rows created
in the trailing hour at request time:

  SELECT count(*) FROM password_reset_tokens
   WHERE user_id = :user_id AND created_at >= :now - 1 hour

A row per request is kept for audit anyway (IP, User-Agent), so the count
needs no separate counter. The (user_id, created_at) index keeps it cheap.
"""

import secrets
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.clock import Clock, utcnow
from ticketflow.core.config import Settings
from ticketflow.core.exceptions import TooManyRequests, ValidationFailed
from ticketflow.core.logging import get_logger
from ticketflow.core.security import hash_password, validate_password_complexity
from ticketflow.models.tokens import EmailVerificationToken, PasswordResetToken
from ticketflow.models.user import User
from ticketflow.services import credential_store
from ticketflow.services.auth_service import ClientInfo, SessionManager
from ticketflow.services.email_service import AuthMailer

logger = get_logger(__name__)

TOKEN_BYTES = 32
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"
INVALID_RESET_TOKEN = "Invalid or expired reset token"


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class CredentialRecovery:
    def __init__(
        self,
        db: AsyncSession,
        *,
        sessions: SessionManager,
        mailer: AuthMailer,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.sessions = sessions
        self.mailer = mailer
        self.clock = clock
        self._verification_lifetime = timedelta(hours=settings.EMAIL_VERIFICATION_EXPIRE_HOURS)
        self._reset_lifetime = timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
        self._max_reset_requests = settings.MAX_RESET_REQUESTS_PER_HOUR

    # ── Registration and verification ─────────────────────────────────

    async def register(
        self,
        *,
        email: str,
        password: str,
        confirm_password: str,
        first_name: str,
        last_name: str,
        date_of_birth: Optional[date] = None,
    ) -> User:
        """
        Create an unverified user and send the verification email.

        Input is fully checked before anything is written. A failed email
        send does not fail the registration; the user can ask for a resend.
        """
        if password != confirm_password:
            raise ValidationFailed("Passwords do not match", reason="password_mismatch")
        validate_password_complexity(password)

        user = await credential_store.create(
            self.db,
            email=email,
            password_hash=hash_password(password),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            date_of_birth=date_of_birth,
        )
        token = await self.create_verification_token(user.id)
        await self.db.commit()
        logger.info("user_registered", user_id=user.id)

        sent = await self.mailer.send_email_verification(user.email, user.first_name, token)
        if not sent:
            logger.warning("verification_email_not_sent", user_id=user.id)
        return user

    async def create_verification_token(self, user_id: int) -> str:
        now = self.clock()
        await self.db.execute(
            update(EmailVerificationToken)
            .where(EmailVerificationToken.user_id == user_id, EmailVerificationToken.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        token = generate_token()
        self.db.add(
            EmailVerificationToken(
                user_id=user_id,
                token=token,
                expires_at=now + self._verification_lifetime,
                used=False,
                created_at=now,
            )
        )
        await self.db.flush()
        return token

    async def verify_email(self, token: str) -> User:
        now = self.clock()
        # Claimed in one conditional UPDATE; a concurrent claim finds used=true
        result = await self.db.execute(
            update(EmailVerificationToken)
            .where(
                EmailVerificationToken.token == token,
                EmailVerificationToken.used.is_(False),
                EmailVerificationToken.expires_at > now,
            )
            .values(used=True, used_at=now)
            .returning(EmailVerificationToken.user_id)
            .execution_options(synchronize_session=False)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            logger.info("email_verification_rejected", reason="invalid_or_expired")
            raise ValidationFailed(INVALID_VERIFICATION_TOKEN, reason="invalid_token")

        user = await credential_store.find_by_id(self.db, user_id)
        if user is None:
            await self.db.rollback()
            raise ValidationFailed(INVALID_VERIFICATION_TOKEN, reason="invalid_token")
        if user.email_verified:
            await self.db.rollback()
            raise ValidationFailed("Email is already verified", reason="already_verified")

        await credential_store.set_email_verified(self.db, user.id)
        await self.db.commit()

        user = await credential_store.find_by_id(self.db, user.id)
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, email: str) -> None:
        """Issue a fresh verification token. Unknown emails are a silent no-op."""
        user = await credential_store.find_by_email(self.db, email)
        if user is None:
            logger.info("verification_resend_ignored", reason="unknown_email")
            return
        if user.email_verified:
            raise ValidationFailed("Email is already verified", reason="already_verified")

        token = await self.create_verification_token(user.id)
        await self.db.commit()
        await self.mailer.send_email_verification(user.email, user.first_name, token)
        logger.info("verification_resent", user_id=user.id)

    # ── Password reset ────────────────────────────────────────────────

    async def _recent_reset_requests(self, user_id: int, since) -> int:
        result = await self.db.execute(
            select(func.count(PasswordResetToken.id)).where(
                PasswordResetToken.user_id == user_id,
                PasswordResetToken.created_at >= since,
            )
        )
        return result.scalar_one()

    async def initiate_password_reset(self, email: str, client: Optional[ClientInfo] = None) -> None:
        """
        Start a password reset.

        Returns the same way whether or not the email is registered, so the
        endpoint cannot be used to discover accounts.
        """
        client = client or ClientInfo()
        now = self.clock()

        user = await credential_store.find_by_email(self.db, email)
        if user is None:
            logger.info("password_reset_ignored", reason="unknown_email")
            return

        recent = await self._recent_reset_requests(user.id, now - timedelta(hours=1))
        if recent >= self._max_reset_requests:
            logger.warning("password_reset_rate_limited", user_id=user.id, recent=recent)
            raise TooManyRequests("Too many password reset requests. Please try again later.")

        await self.db.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.user_id == user.id, PasswordResetToken.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        token = generate_token()
        self.db.add(
            PasswordResetToken(
                user_id=user.id,
                token=token,
                expires_at=now + self._reset_lifetime,
                used=False,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                created_at=now,
            )
        )
        await self.db.commit()

        logger.info("password_reset_requested", user_id=user.id, ip_address=client.ip_address)
        await self.mailer.send_password_reset(user.email, user.first_name, token)

    async def reset_password(self, token: str, new_password: str, confirm_password: str) -> None:
        if new_password != confirm_password:
            raise ValidationFailed("Passwords do not match", reason="password_mismatch")
        validate_password_complexity(new_password)

        now = self.clock()
        result = await self.db.execute(
            update(PasswordResetToken)
            .where(
                PasswordResetToken.token == token,
                PasswordResetToken.used.is_(False),
                PasswordResetToken.expires_at > now,
            )
            .values(used=True)
            .returning(PasswordResetToken.user_id)
            .execution_options(synchronize_session=False)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            logger.info("password_reset_rejected", reason="invalid_or_expired")
            raise ValidationFailed(INVALID_RESET_TOKEN, reason="invalid_token")

        user = await credential_store.find_by_id(self.db, user_id)
        if user is None:
            await self.db.rollback()
            raise ValidationFailed(INVALID_RESET_TOKEN, reason="invalid_token")

        await credential_store.update_password_hash(self.db, user.id, hash_password(new_password))
        await self.db.commit()

        await self.sessions.reset_all_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        await self.mailer.send_password_changed(user.email, user.first_name)

    # ── Maintenance ───────────────────────────────────────────────────

    async def purge_expired(self) -> dict[str, int]:
        """Delete expired or used tokens and expired sessions."""
        now = self.clock()
        # Reset rows inside the rate-limit window are kept for the hourly count
        window_start = now - timedelta(hours=1)

        verification = await self.db.execute(
            delete(EmailVerificationToken)
            .where(or_(EmailVerificationToken.expires_at <= now, EmailVerificationToken.used.is_(True)))
            .execution_options(synchronize_session=False)
        )
        reset = await self.db.execute(
            delete(PasswordResetToken)
            .where(
                or_(PasswordResetToken.expires_at <= now, PasswordResetToken.used.is_(True)),
                PasswordResetToken.created_at < window_start,
            )
            .execution_options(synchronize_session=False)
        )
        sessions = await self.sessions.purge_expired_sessions()
        await self.db.commit()

        counts = {
            "verification_tokens": verification.rowcount,
            "reset_tokens": reset.rowcount,
            "sessions": sessions,
        }
        logger.info("expired_records_purged", **counts)
        return counts
