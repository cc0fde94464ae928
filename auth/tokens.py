"""
auth/tokens.py -- Session token issuer (access + refresh JWTs).

Security design decisions:
  JWT: python-jose with HS256. Both tokens are signed with JWT_SECRET and
       bound to an explicit issuer/audience pair so a token minted by another
       application sharing the secret is still rejected. Verification returns
       None on any failure -- route layer turns that into a 401. There is no
       leeway on exp: a token is dead the second it expires.

  Two lifetimes: access tokens are short (default 15m) to limit replay blast
       radius; refresh tokens are long (default 7d) and persisted server-side
       so they can be revoked. The "type" claim keeps one from being used as
       the other.

  jti: every token carries 128 random bits. Without it, two refresh tokens
       minted for the same user in the same second would be byte-identical and
       collide on the UNIQUE token column.

  Durations use the compact grammar ^(\\d+)([smhd])$. A malformed duration is
       a configuration error, never silently replaced by a default.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.models import DEFAULT_ROLES, TokenPair
from core.config import DURATION_PATTERN
from core.errors import ConfigurationError, TokenError

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("wikimillionaire.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


def parse_duration(value: str) -> timedelta:
    """Parse "15m" / "7d" / "30s" / "1h" into a timedelta.

    Raises ConfigurationError for anything outside ^(\\d+)([smhd])$.
    """
    match = DURATION_PATTERN.match(value or "")
    if not match:
        raise ConfigurationError(f"Invalid expiry format: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_UNITS[unit]: int(amount)})


def expiry_date(value: str, now: datetime | None = None) -> datetime:
    """Return the absolute UTC timestamp `value` from now."""
    now = now or datetime.now(timezone.utc)
    return now + parse_duration(value)


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and verifies the access/refresh token pair.

    Usage:
        issuer = TokenIssuer.from_settings(settings)
        pair = issuer.issue_pair(user)
        payload = issuer.verify(pair.access_token, expected_type="access")
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        access_expiry: str = "15m",
        refresh_expiry: str = "7d",
    ) -> None:
        if not secret:
            raise ConfigurationError("Token signing secret is not configured")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        # Parsed eagerly so a bad duration fails at construction, not at login.
        self.access_ttl = parse_duration(access_expiry)
        self.refresh_ttl = parse_duration(refresh_expiry)

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_expiry=settings.access_token_expiry,
            refresh_expiry=settings.refresh_token_expiry,
        )

    def issue_pair(self, user: User, now: datetime | None = None) -> TokenPair:
        """Mint an access token and a refresh token for `user`.

        Both carry the same identity claims; only "type", "exp" and "jti"
        differ. `now` is injectable so expiry boundaries can be tested.
        """
        if user.id is None:
            raise ValueError("Cannot issue tokens for a user without an id")
        now = now or datetime.now(timezone.utc)
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        return TokenPair(
            access_token=self._encode(user, ACCESS, now, access_exp),
            refresh_token=self._encode(user, REFRESH, now, refresh_exp),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            access_max_age=int(self.access_ttl.total_seconds()),
            refresh_max_age=int(self.refresh_ttl.total_seconds()),
        )

    def _encode(self, user: User, token_type: str, now: datetime, expires: datetime) -> str:
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "wikimedia_id": user.wikimedia_id,
            "roles": list(user.roles or DEFAULT_ROLES),
            "type": token_type,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": expires,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str | None, expected_type: str | None = None) -> dict | None:
        """Decode and verify a token. Returns the payload dict or None on any failure.

        Returning None (rather than raising) keeps the caller simple: any
        invalid token is treated as unauthenticated, never as authenticated
        with reduced trust.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            return None
        if "sub" not in payload or payload.get("type") not in (ACCESS, REFRESH):
            return None
        if expected_type is not None and payload["type"] != expected_type:
            logger.debug("Token rejected: expected %s token, got %s", expected_type, payload["type"])
            return None
        return payload

    def require(self, token: str | None, expected_type: str) -> dict:
        """Like verify() but raises TokenError instead of returning None."""
        payload = self.verify(token, expected_type=expected_type)
        if payload is None:
            raise TokenError(f"Invalid or expired {expected_type} token")
        return payload
