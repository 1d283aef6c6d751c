"""
Password hashing, password policy and token fingerprinting.
"""

import hashlib
import hmac

import bcrypt

from ticketflow.core.exceptions import ValidationFailed

PASSWORD_MIN_LENGTH = 12
# bcrypt only considers the first 72 bytes
PASSWORD_MAX_BYTES = 72
PASSWORD_SPECIAL_CHARACTERS = "@$!%*?&"


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def validate_password_complexity(password: str) -> None:
    """
    Enforce the password policy used at registration and reset.

    Each unmet rule raises ValidationFailed with its own reason code, checked
    in a fixed order so the first failing rule is the one reported.
    """
    if password is None or len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationFailed(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters long",
            reason="min_length",
        )
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValidationFailed(
            f"Password must be at most {PASSWORD_MAX_BYTES} bytes long",
            reason="max_length",
        )
    if not any(ch.isupper() for ch in password):
        raise ValidationFailed(
            "Password must contain at least one uppercase letter",
            reason="missing_uppercase",
        )
    if not any(ch.islower() for ch in password):
        raise ValidationFailed(
            "Password must contain at least one lowercase letter",
            reason="missing_lowercase",
        )
    if not any(ch.isdigit() for ch in password):
        raise ValidationFailed(
            "Password must contain at least one number",
            reason="missing_digit",
        )
    if not any(ch in PASSWORD_SPECIAL_CHARACTERS for ch in password):
        raise ValidationFailed(
            f"Password must contain at least one special character ({PASSWORD_SPECIAL_CHARACTERS})",
            reason="missing_special",
        )


def fingerprint_token(token: str, key: str) -> str:
    """
    Keyed SHA-256 digest of a bearer token.

    Session rows and the Redis mirror are looked up by this value; the raw
    token is never stored.
    """
    return hmac.new(key.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()
