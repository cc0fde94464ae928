"""
api/routes/oauth2.py -- OAuth 2.0 + PKCE login endpoints.

Routes:
  GET /api/auth/login?returnTo=/path
      Generate state + code verifier, store them with returnTo in the
      wikimedia_auth_state cookie, 302 to Wikimedia's authorize endpoint.
  GET /api/auth/callback?code=...&state=...
      Check state, exchange the code with the stored verifier, establish the
      session, 302 to returnTo. An `error` parameter from the provider goes
      straight to the error page.

Security:
  [H2] /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  State is compared before any provider call; a mismatch creates nothing.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse, Response

from api.limiter import limiter, login_limit
from api.responses import client_context, finish_login
from auth.cookies import read_pkce_state, set_pkce_state
from auth.flows import OAuth2Flow
from core.errors import ProtocolError

logger = logging.getLogger("wikimillionaire.api")

router = APIRouter()


def _flow(request: Request) -> OAuth2Flow:
    state = request.app.state
    return OAuth2Flow(state.settings, state.db_provider, state.token_issuer)


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/login")
def oauth2_login(request: Request, return_to: Optional[str] = Query(None, alias="returnTo")) -> Response:
    """Start the OAuth 2.0 authorization-code flow with PKCE."""
    authorize_url, flow_state = _flow(request).begin(return_to)
    resp = RedirectResponse(authorize_url, status_code=302)
    set_pkce_state(resp, flow_state, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/callback")
def oauth2_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> Response:
    """Complete the OAuth 2.0 flow. Flow cookies are cleared on every outcome."""
    client = client_context(request)

    def complete():
        if error:
            logger.info("Provider returned error=%r on OAuth 2.0 callback", error[:64])
            raise ProtocolError(
                "Provider returned an error",
                code="provider_denied" if error == "access_denied" else "provider_error",
            )
        # A malformed cookie raises TransientStateError here, inside finish_login.
        flow_state = read_pkce_state(request.cookies)
        return _flow(request).complete(code, state, flow_state, client)

    return finish_login(request, complete)
