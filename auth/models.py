"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and flows do the
work; these classes only own the domain shape.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

DEFAULT_ROLES: tuple[str, ...] = ("user",)


@dataclass
class User:
    """An authenticated identity bound to exactly one Wikimedia account.

    wikimedia_id is the provider's stable subject id. It is unique across all
    users when present and only ever None for rows created outside the login
    flows. roles is filled with DEFAULT_ROLES by the store when empty.

    Timestamps are ISO 8601 UTC strings, the same representation every
    backend stores.
    """

    username: str
    wikimedia_id: str | None = None
    id: int | None = None
    email: str | None = None
    avatar_url: str | None = None
    roles: list[str] = field(default_factory=list)
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class RefreshToken:
    """A persisted, revocable refresh credential.

    A token string is either live (row present, expires_at in the future) or
    revoked (row deleted). Expired rows are treated as absent by the store and
    removed by the periodic purge.
    """

    user_id: int
    token: str
    expires_at: datetime  # timezone-aware UTC
    user_agent: str | None = None
    ip_address: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class TokenCredential:
    """An OAuth 1.0a token key/secret pair (request token or access token)."""

    key: str
    secret: str


@dataclass(frozen=True)
class ProviderIdentity:
    """Who Wikimedia says the user is, normalized across both protocols."""

    subject: str
    username: str
    email: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh tokens minted together for one login or rotation."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_max_age: int  # seconds, mirrors the access token exp
    refresh_max_age: int  # seconds, mirrors the refresh token exp


@dataclass(frozen=True)
class ClientContext:
    """Request metadata recorded alongside a refresh token."""

    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class SessionGrant:
    """Result of a completed login: who logged in, their tokens, and where to go."""

    user: User
    tokens: TokenPair
    return_to: str = "/"

    @property
    def session_info(self) -> dict[str, str]:
        """Non-sensitive data for the client-readable session_info cookie."""
        return {"userId": str(self.user.id), "username": self.user.username}
