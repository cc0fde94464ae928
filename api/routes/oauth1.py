"""
api/routes/oauth1.py -- OAuth 1.0a (Special:OAuth) login endpoints.

Routes:
  GET /api/auth/oauth1-login?returnTo=/path
      Fetch a request token, remember its secret in an httpOnly cookie, and
      302 to Wikimedia's authorize page.
  GET /api/auth/oauth1-callback?oauth_token=...&oauth_verifier=...
      Finish the handshake, establish the session, 302 to returnTo.

Security:
  The token secret never leaves the server except inside an httpOnly,
  SameSite=Lax cookie that expires with the login attempt.
  [H2] oauth1-login is rate-limited per IP (LOGIN_RATE_LIMIT).
  Cache-Control: no-store on both responses.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse, Response

from api.limiter import limiter, login_limit
from api.responses import client_context, finish_login
from auth.cookies import read_oauth1_state, set_oauth1_state
from auth.flows import OAuth1Flow

router = APIRouter()


def _flow(request: Request) -> OAuth1Flow:
    state = request.app.state
    return OAuth1Flow(state.settings, state.db_provider, state.token_issuer)


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/oauth1-login")
def oauth1_login(request: Request, return_to: Optional[str] = Query(None, alias="returnTo")) -> Response:
    """Start the OAuth 1.0a handshake.

    ConfigurationError (no consumer credentials) and ProtocolError (provider
    refused the request token) propagate to the app's AuthError handler.
    """
    authorize_url, flow_state = _flow(request).begin(return_to)
    resp = RedirectResponse(authorize_url, status_code=302)
    set_oauth1_state(resp, flow_state, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/oauth1-callback")
def oauth1_callback(
    request: Request,
    oauth_token: Optional[str] = None,
    oauth_verifier: Optional[str] = None,
) -> Response:
    """Complete the OAuth 1.0a handshake. Flow cookies are cleared on every outcome."""
    flow_state = read_oauth1_state(request.cookies)
    client = client_context(request)
    return finish_login(
        request,
        lambda: _flow(request).complete(oauth_token, oauth_verifier, flow_state, client),
    )
