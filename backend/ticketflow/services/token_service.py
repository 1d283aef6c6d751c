"""
Signed bearer tokens (HS256 JWT via python-jose).

The issuer holds the signing key it was constructed with; nothing else in
the process reads the key. Expiry is checked against the injected clock
rather than the wall clock so tests can move time.
"""

import calendar
import enum
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from jose import JWTError, jwt

from ticketflow.core.clock import Clock, utcnow
from ticketflow.core.exceptions import Unauthorized
from ticketflow.core.logging import get_logger
from ticketflow.models.user import User

logger = get_logger(__name__)


class DurationClass(str, enum.Enum):
    SHORT = "short"  # plain login
    LONG = "long"  # remember-me


class TokenType(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    expires_in: int  # seconds


def _to_epoch(moment: datetime) -> int:
    return calendar.timegm(moment.utctimetuple())


class TokenIssuer:
    def __init__(
        self,
        *,
        secret_key: str,
        algorithm: str,
        issuer: str,
        audience: str,
        short_lifetime: timedelta,
        long_lifetime: timedelta,
        clock: Clock = utcnow,
    ):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience
        self._lifetimes = {
            DurationClass.SHORT: short_lifetime,
            DurationClass.LONG: long_lifetime,
        }
        self._clock = clock

    def lifetime(self, duration: DurationClass) -> timedelta:
        return self._lifetimes[duration]

    def issue(
        self,
        user: User,
        duration: DurationClass = DurationClass.SHORT,
        token_type: TokenType = TokenType.ACCESS,
    ) -> IssuedToken:
        now = self._clock()
        lifetime = self._lifetimes[duration]
        expires_at = now + lifetime
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email_verified": bool(user.email_verified),
            "token_type": token_type.value,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": _to_epoch(now),
            "exp": _to_epoch(expires_at),
            # Two logins in the same second must still yield distinct tokens
            "jti": secrets.token_hex(8),
        }
        token = jwt.encode(claims, self._secret_key, algorithm=self._algorithm)
        return IssuedToken(
            token=token,
            expires_at=expires_at,
            expires_in=int(lifetime.total_seconds()),
        )

    def decode(self, token: str) -> dict[str, Any]:
        """
        Verify signature, issuer, audience and expiry; return the claims.

        Raises Unauthorized without saying which check failed.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": False},
            )
        except JWTError as e:
            logger.info("token_rejected", reason="structure", error=type(e).__name__)
            raise Unauthorized("Invalid token")

        exp = claims.get("exp")
        if not isinstance(exp, int) or exp <= _to_epoch(self._clock()):
            logger.info("token_rejected", reason="expired")
            raise Unauthorized("Invalid token")
        return claims

    def validate_structure(self, token: str) -> bool:
        try:
            self.decode(token)
        except Unauthorized:
            return False
        return True

    def extract_user_id(self, token: str) -> Optional[int]:
        try:
            claims = self.decode(token)
            return int(claims["sub"])
        except (Unauthorized, KeyError, TypeError, ValueError):
            return None

    def validate_against_user(self, token: str, user: User) -> bool:
        """
        Cross-check a token against the current user record.

        The embedded email and names are a snapshot from issue time; only the
        subject and email are compared, against the stored user.
        """
        try:
            claims = self.decode(token)
        except Unauthorized:
            return False
        return claims.get("sub") == str(user.id) and claims.get("email") == user.email
