"""
API request and response models for the WikiMillionaire auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from auth.models import User


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx JSON response."""

    model_config = ConfigDict(frozen=True)

    error: str


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"


class MeResponse(BaseModel):
    """Response for GET /api/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    wikimedia_id: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    roles: list[str]
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            id=user.id,
            username=user.username,
            wikimedia_id=user.wikimedia_id,
            email=user.email,
            avatar_url=user.avatar_url,
            roles=list(user.roles),
            last_login=user.last_login,
        )


class RefreshResponse(BaseModel):
    """Response for POST /api/auth/refresh. Tokens travel in cookies only."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    expires_in: int
