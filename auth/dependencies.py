"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two ways to present an access token are checked in priority order:
  1. "access_token" cookie -- set by the login callbacks.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a User loaded from the database provider, so a token for a
deleted user stops working immediately.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from web/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.cookies import ACCESS_COOKIE
from auth.models import User
from auth.tokens import ACCESS


def presented_access_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip() or None
    return token


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises for a bad token -- callers that need a hard 401 should use
    get_current_user(). A DatabaseError from the lookup does propagate.
    """
    token = presented_access_token(request)
    if not token:
        return None
    payload = request.app.state.token_issuer.verify(token, expected_type=ACCESS)
    if payload is None:
        return None
    return request.app.state.db_provider.get_user_by_id(payload["sub"])


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user
