"""
api/responses.py -- Response builders shared by the login routes.

finish_login() is the single place a callback turns a flow outcome into an
HTTP response, so every callback gets identical behaviour:
  success                          -> 302 to return_to + session cookies
  ProtocolError / TransientState   -> 302 to the error page with a code
  PersistenceError / Configuration -> 500 JSON {"error": ...}
  anything else                    -> 500 JSON, logged with its traceback
and in every case the flow cookies are expired, so replaying the same
callback URL can never succeed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.models import ErrorResponse
from auth.cookies import clear_flow_cookies, set_session_cookies
from auth.flows import client_ip
from auth.models import ClientContext, SessionGrant
from core.config import Settings
from core.errors import DEFAULT_ERROR_CODE, ERROR_MESSAGES, AuthError, ConfigurationError, PersistenceError

logger = logging.getLogger("wikimillionaire.api")


def client_context(request: Request) -> ClientContext:
    return ClientContext(
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request.headers),
    )


def error_redirect(settings: Settings, code: str) -> RedirectResponse:
    """302 to the error page. Unknown codes collapse to the default code."""
    if code not in ERROR_MESSAGES:
        code = DEFAULT_ERROR_CODE
    resp = RedirectResponse(f"{settings.error_page}?{urlencode({'error': code})}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def error_json(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def error_response(settings: Settings, exc: AuthError) -> Response:
    """Map an AuthError raised during a browser login step to a response."""
    if isinstance(exc, (PersistenceError, ConfigurationError)):
        return error_json(500, exc.public_message)
    return error_redirect(settings, exc.code)


def finish_login(request: Request, complete: Callable[[], SessionGrant]) -> Response:
    settings: Settings = request.app.state.settings
    try:
        grant = complete()
    except (PersistenceError, ConfigurationError) as exc:
        logger.error("Login callback %s failed: %s", request.url.path, exc.message)
        resp = error_response(settings, exc)
    except AuthError as exc:
        logger.warning("Login callback %s rejected: %s (%s)", request.url.path, exc.message, exc.code)
        resp = error_response(settings, exc)
    except Exception:
        logger.exception("Unhandled exception in login callback %s", request.url.path)
        resp = error_json(500, "An unexpected error occurred.")
    else:
        resp = RedirectResponse(grant.return_to, status_code=302)
        set_session_cookies(resp, grant.tokens, grant.session_info, settings)
        logger.info("Login completed for user_id=%s via %s", grant.user.id, request.url.path)
    clear_flow_cookies(resp, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp
