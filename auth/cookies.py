"""
auth/cookies.py -- Session and flow-state cookies.

Session cookies (written after a successful login or refresh):
  access_token   httpOnly, SameSite=Lax, max_age = access token lifetime
  refresh_token  httpOnly, SameSite=Lax, max_age = refresh token lifetime
  session_info   NOT httpOnly -- the browser reads {userId, username} from it
                 to render the signed-in state. Contains nothing secret.

Flow cookies (live only between login redirect and callback, <= 15 min):
  oauth_token_secret, oauth_return_to   OAuth 1.0a
  wikimedia_auth_state                  OAuth 2.0, JSON {state, codeVerifier, returnTo}

All cookies share path "/" and the configured domain so that clearing them
always hits the same cookie the browser stored. Secure follows
Settings.cookie_secure (on everywhere except DEBUG, unless overridden).

Values that may contain JSON or path characters are percent-encoded so the
Set-Cookie header never needs RFC 6265 quoting.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
  Response/Request objects are duck-typed Starlette objects.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote

from pydantic import ValidationError

from auth.flows import OAuth1FlowState, PKCEFlowState, safe_return_to
from core.errors import TransientStateError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from auth.models import TokenPair
    from core.config import Settings

logger = logging.getLogger("wikimillionaire.auth")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
SESSION_INFO_COOKIE = "session_info"

OAUTH1_SECRET_COOKIE = "oauth_token_secret"
OAUTH1_RETURN_COOKIE = "oauth_return_to"
PKCE_STATE_COOKIE = "wikimedia_auth_state"

SESSION_COOKIES = (ACCESS_COOKIE, REFRESH_COOKIE, SESSION_INFO_COOKIE)
FLOW_COOKIES = (OAUTH1_SECRET_COOKIE, OAUTH1_RETURN_COOKIE, PKCE_STATE_COOKIE)


def _set(response, settings: Settings, key: str, value: str, max_age: int, httponly: bool = True) -> None:
    response.set_cookie(
        key,
        value=value,
        max_age=max_age,
        path="/",
        domain=settings.cookie_domain or None,
        secure=settings.cookie_secure,
        httponly=httponly,
        samesite="lax",
    )


def _delete(response, settings: Settings, key: str, httponly: bool = True) -> None:
    response.delete_cookie(
        key,
        path="/",
        domain=settings.cookie_domain or None,
        secure=settings.cookie_secure,
        httponly=httponly,
        samesite="lax",
    )


# ---------------------------------------------------------------------------
# Session cookies
# ---------------------------------------------------------------------------


def set_session_cookies(response, pair: TokenPair, session_info: dict[str, str], settings: Settings) -> None:
    """Write access_token, refresh_token and session_info onto `response`."""
    _set(response, settings, ACCESS_COOKIE, pair.access_token, pair.access_max_age)
    _set(response, settings, REFRESH_COOKIE, pair.refresh_token, pair.refresh_max_age)
    _set(
        response,
        settings,
        SESSION_INFO_COOKIE,
        quote(json.dumps(session_info, separators=(",", ":")), safe=""),
        pair.refresh_max_age,
        httponly=False,
    )


def clear_session_cookies(response, settings: Settings) -> None:
    for key in SESSION_COOKIES:
        _delete(response, settings, key, httponly=key != SESSION_INFO_COOKIE)


def read_session_info(cookies: Mapping[str, str]) -> dict | None:
    raw = cookies.get(SESSION_INFO_COOKIE)
    if not raw:
        return None
    try:
        info = json.loads(unquote(raw))
    except ValueError:
        return None
    return info if isinstance(info, dict) else None


# ---------------------------------------------------------------------------
# Flow cookies
# ---------------------------------------------------------------------------


def set_oauth1_state(response, flow_state: OAuth1FlowState, settings: Settings) -> None:
    max_age = settings.transient_cookie_max_age
    _set(response, settings, OAUTH1_SECRET_COOKIE, flow_state.token_secret, max_age)
    _set(response, settings, OAUTH1_RETURN_COOKIE, quote(flow_state.return_to, safe=""), max_age)


def read_oauth1_state(cookies: Mapping[str, str]) -> OAuth1FlowState | None:
    """Return the stored OAuth 1.0a state, or None if the secret cookie is absent."""
    secret = cookies.get(OAUTH1_SECRET_COOKIE)
    if not secret:
        return None
    return OAuth1FlowState(
        token_secret=secret,
        return_to=safe_return_to(unquote(cookies.get(OAUTH1_RETURN_COOKIE) or "")),
    )


def set_pkce_state(response, flow_state: PKCEFlowState, settings: Settings) -> None:
    value = quote(flow_state.model_dump_json(by_alias=True), safe="")
    _set(response, settings, PKCE_STATE_COOKIE, value, settings.transient_cookie_max_age)


def read_pkce_state(cookies: Mapping[str, str]) -> PKCEFlowState | None:
    """Return the stored OAuth 2.0 state, or None if the cookie is absent.

    A cookie that is present but does not decode to a complete state raises
    TransientStateError -- it was tampered with or written by something else.
    """
    raw = cookies.get(PKCE_STATE_COOKIE)
    if not raw:
        return None
    try:
        flow_state = PKCEFlowState.model_validate_json(unquote(raw))
    except ValidationError as exc:
        logger.warning("Discarding malformed %s cookie (%d errors)", PKCE_STATE_COOKIE, exc.error_count())
        raise TransientStateError("OAuth 2.0 flow state cookie is malformed", code="invalid_flow_state") from exc
    return flow_state.model_copy(update={"return_to": safe_return_to(flow_state.return_to)})


def clear_flow_cookies(response, settings: Settings) -> None:
    """Expire every flow cookie. Called on every callback outcome."""
    for key in FLOW_COOKIES:
        _delete(response, settings, key)
