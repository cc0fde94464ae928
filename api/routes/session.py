"""
api/routes/session.py -- Session endpoints shared by both login protocols.

Routes:
  GET      /api/auth/me       -- current user (cookie or Bearer access token)
  GET|POST /api/auth/logout   -- revoke refresh token, clear cookies, 302 /
  POST     /api/auth/refresh  -- rotate the refresh token, new cookie pair

Refresh rotation:
  The presented refresh token must verify as type "refresh" AND still have a
  live row in the database. The row is deleted and the replacement stored
  before any cookie is written, so each refresh token works exactly once.
  Any failure answers 401 and clears the session cookies.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.limiter import limiter, login_limit
from api.models import MeResponse, RefreshResponse
from api.responses import client_context, error_json
from auth.cookies import REFRESH_COOKIE, clear_session_cookies, set_session_cookies
from auth.dependencies import get_current_user
from auth.models import RefreshToken, SessionGrant, User
from auth.tokens import REFRESH

logger = logging.getLogger("wikimillionaire.api")

# Auth policy:
# - GET      /api/auth/me:      requires auth (get_current_user)
# - GET|POST /api/auth/logout:  public -- clearing cookies needs no prior auth
# - POST     /api/auth/refresh: refresh cookie only; access token not required
router = APIRouter()


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the user the presented access token belongs to."""
    return MeResponse.from_user(current_user)


@router.api_route("/auth/logout", methods=["GET", "POST"])
def logout(request: Request) -> Response:
    """Revoke the presented refresh token (if any), clear cookies, go home."""
    settings = request.app.state.settings
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if refresh_token:
        revoked = request.app.state.db_provider.delete_refresh_token(refresh_token)
        logger.info("Logout (refresh token revoked=%s)", revoked)
    resp = RedirectResponse("/", status_code=302)
    clear_session_cookies(resp, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _unauthorized(request: Request) -> JSONResponse:
    resp = error_json(401, "Not authenticated")
    clear_session_cookies(resp, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(login_limit)
@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request) -> Response:
    """Exchange a live refresh token for a fresh access/refresh pair."""
    state = request.app.state
    presented = request.cookies.get(REFRESH_COOKIE)
    payload = state.token_issuer.verify(presented, expected_type=REFRESH)
    if payload is None:
        return _unauthorized(request)

    store = state.db_provider
    record = store.get_refresh_token(presented)
    if record is None or str(record.user_id) != payload["sub"]:
        logger.warning("Refresh rejected: token not live for sub=%s", payload["sub"])
        return _unauthorized(request)
    user = store.get_user_by_id(record.user_id)
    if user is None:
        return _unauthorized(request)

    # Delete first: if two requests race with the same token, only one
    # delete reports a row and only that one continues.
    if not store.delete_refresh_token(presented):
        return _unauthorized(request)

    tokens = state.token_issuer.issue_pair(user)
    client = client_context(request)
    store.store_refresh_token(
        RefreshToken(
            user_id=user.id,
            token=tokens.refresh_token,
            expires_at=tokens.refresh_expires_at,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )
    )
    grant = SessionGrant(user=user, tokens=tokens)
    resp = JSONResponse(
        content=RefreshResponse(
            user_id=user.id,
            username=user.username,
            expires_in=tokens.access_max_age,
        ).model_dump()
    )
    set_session_cookies(resp, tokens, grant.session_info, state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp
