"""
web/routes.py -- Server-rendered pages for the login flows.

Routes:
  GET /auth/error?error=<code>  -- human-readable login failure page

The login callbacks never render HTML themselves; on a handled failure they
302 here with a machine code. The page maps that code through
core.errors.ERROR_MESSAGES [M3] -- the raw query value is never passed to the
template, so a crafted ?error= cannot inject markup or misleading text.
"""

import logging
from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from core.errors import DEFAULT_ERROR_CODE, ERROR_MESSAGES

logger = logging.getLogger("wikimillionaire.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()


@router.get("/auth/error", response_class=HTMLResponse)
def auth_error(request: Request) -> HTMLResponse:
    """Render the whitelisted message for ?error=; unknown codes get the generic one."""
    code = request.query_params.get("error", "")
    if code not in ERROR_MESSAGES:
        code = DEFAULT_ERROR_CODE
    return templates.TemplateResponse(
        request,
        "auth_error.html",
        {"error_code": code, "error_msg": ERROR_MESSAGES[code]},
        headers={"Cache-Control": "no-store"},
    )
