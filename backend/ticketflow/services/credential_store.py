"""
Durable user records: lookup, creation and login-attempt bookkeeping.

CONCURRENCY: failed-login counting
==================================

Two wrong passwords submitted at the same moment must both count. A
read-modify-write in Python (load user, attempts += 1, save) loses one of
them. Instead the increment is a single statement:

  UPDATE users
     SET failed_login_attempts = failed_login_attempts + 1,
         account_locked = (failed_login_attempts + 1 >= :threshold),
         last_login_attempt = :now
   WHERE id = :user_id
  RETURNING failed_login_attempts, account_locked

The database serializes the row update, and RETURNING hands back the value
this attempt produced, so exactly one caller observes the threshold crossing.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.exceptions import Conflict
from ticketflow.core.logging import get_logger
from ticketflow.models.user import User

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailedAttemptResult:
    attempts: int
    locked: bool


def normalize_email(email: str) -> str:
    return email.strip().lower()


# Counters and flags change through bulk UPDATEs below, so lookups always
# overwrite whatever copy of the row the session already holds.

async def find_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(
        select(User)
        .where(User.email == normalize_email(email))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create(
    db: AsyncSession,
    *,
    email: str,
    password_hash: str,
    first_name: str,
    last_name: str,
    date_of_birth=None,
) -> User:
    """
    Insert a new user. Raises Conflict if the email is already registered.

    The existence check gives a clean error in the common case; the unique
    index catches the race where two registrations for one email interleave.
    """
    email = normalize_email(email)
    if await find_by_email(db, email):
        logger.warning("registration_conflict", reason="email_exists")
        raise Conflict("User with this email already exists")

    user = User(
        email=email,
        password_hash=password_hash,
        first_name=first_name,
        last_name=last_name,
        date_of_birth=date_of_birth,
        email_verified=False,
        failed_login_attempts=0,
        account_locked=False,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict("User with this email already exists")

    await db.refresh(user)
    return user


async def update_password_hash(db: AsyncSession, user_id: int, password_hash: str) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(password_hash=password_hash)
        .execution_options(synchronize_session=False)
    )


async def set_email_verified(db: AsyncSession, user_id: int, verified: bool = True) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(email_verified=verified)
        .execution_options(synchronize_session=False)
    )


async def increment_failed_attempts(
    db: AsyncSession,
    user_id: int,
    *,
    now: datetime,
    threshold: int,
) -> FailedAttemptResult:
    """Atomically count one failed login and lock the account at the threshold."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            failed_login_attempts=User.failed_login_attempts + 1,
            account_locked=(User.failed_login_attempts + 1) >= threshold,
            last_login_attempt=now,
        )
        .returning(User.failed_login_attempts, User.account_locked)
        .execution_options(synchronize_session=False)
    )
    attempts, locked = result.one()
    return FailedAttemptResult(attempts=attempts, locked=bool(locked))


async def reset_failed_attempts(db: AsyncSession, user_id: int) -> None:
    """Clear the counter and the lock in one statement."""
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(failed_login_attempts=0, account_locked=False)
        .execution_options(synchronize_session=False)
    )
