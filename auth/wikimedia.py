"""
auth/wikimedia.py -- HTTP calls to Wikimedia's OAuth endpoints.

Every network round trip either login flow makes lives here; flows.py only
sequences them. Functions are plain module-level functions over a shared
requests.Session so tests can patch one name at a time.

OAuth 1.0a (Special:OAuth on index.php, HMAC-SHA1 signed):
  fetch_request_token -> fetch_access_token -> fetch_identity

OAuth 2.0 (rest.php/oauth2, PKCE):
  exchange_code -> fetch_profile

Failure semantics: any transport error, non-2xx status, or response that does
not carry the fields we need raises ProtocolError. Nothing here returns a
partial identity. Provider response bodies are logged at WARNING truncated to
200 characters; tokens and secrets are never logged.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl

import requests
from authlib.common.security import generate_token
from jose import JWTError, jwt

from auth.models import ProviderIdentity, TokenCredential
from auth.oauth1 import OAuth1Endpoints
from core.errors import ProtocolError

if TYPE_CHECKING:
    from auth.oauth1 import OAuth1Signer
    from core.config import Settings

logger = logging.getLogger("wikimillionaire.auth.wikimedia")

OAUTH2_AUTHORIZE_PATH = "/w/rest.php/oauth2/authorize"
OAUTH2_TOKEN_PATH = "/w/rest.php/oauth2/access_token"
OAUTH2_PROFILE_PATH = "/w/rest.php/oauth2/resource/profile"

# Module-level session shared across all provider calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- the OAuth endpoints
# are fixed, known URLs and should never bounce through a redirect chain.
_session = requests.Session()
_session.max_redirects = 3


def _base(settings: Settings) -> str:
    return settings.wikimedia_base_url.rstrip("/")


def oauth2_authorize_url(settings: Settings) -> str:
    return _base(settings) + OAUTH2_AUTHORIZE_PATH


def _snippet(resp: requests.Response) -> str:
    return (resp.text or "")[:200]


def _send(method: str, url: str, settings: Settings, what: str, **kwargs) -> requests.Response:
    """Issue one provider request; translate every failure into ProtocolError."""
    try:
        resp = _session.request(method, url, timeout=settings.provider_timeout, **kwargs)
    except requests.RequestException as e:
        logger.warning("Wikimedia %s request failed: %s", what, e)
        raise ProtocolError(f"Wikimedia {what} request failed") from e
    if not resp.ok:
        logger.warning("Wikimedia %s returned HTTP %s: %s", what, resp.status_code, _snippet(resp))
        raise ProtocolError(f"Wikimedia {what} returned HTTP {resp.status_code}")
    return resp


def _parse_credential(resp: requests.Response, what: str) -> TokenCredential:
    """Read oauth_token / oauth_token_secret from a form-encoded body."""
    fields = dict(parse_qsl(resp.text or ""))
    key = fields.get("oauth_token")
    secret = fields.get("oauth_token_secret")
    if not key or not secret:
        # MediaWiki reports OAuth errors as a 200 with an "Error: ..." or JSON body.
        logger.warning("Wikimedia %s response had no token: %s", what, _snippet(resp))
        raise ProtocolError(f"Wikimedia {what} response did not contain a token")
    return TokenCredential(key=key, secret=secret)


# ---------------------------------------------------------------------------
# OAuth 1.0a
# ---------------------------------------------------------------------------


def fetch_request_token(signer: OAuth1Signer, settings: Settings) -> TokenCredential:
    """Obtain a temporary request token (Special:OAuth/initiate)."""
    url = OAuth1Endpoints(settings.wikimedia_base_url).request_token
    header = signer.sign("POST", url, oauth_params={"oauth_callback": settings.wikimedia_oauth1_callback})
    resp = _send("POST", url, settings, "request-token", headers={"Authorization": header})
    return _parse_credential(resp, "request-token")


def fetch_access_token(
    signer: OAuth1Signer,
    settings: Settings,
    request_token: TokenCredential,
    verifier: str,
) -> TokenCredential:
    """Trade an authorized request token + verifier for an access token."""
    url = OAuth1Endpoints(settings.wikimedia_base_url).access_token
    header = signer.sign("POST", url, token=request_token, oauth_params={"oauth_verifier": verifier})
    resp = _send("POST", url, settings, "access-token", headers={"Authorization": header})
    return _parse_credential(resp, "access-token")


def decode_identity(raw: str, signer: OAuth1Signer, settings: Settings) -> dict:
    """Decode the identify endpoint's JWT.

    With OAUTH1_VERIFY_IDENTITY on (the default) the HS256 signature is
    checked against the consumer secret and the audience must equal our
    consumer key. Off is for local testing against a stub provider only.
    """
    try:
        if settings.oauth1_verify_identity:
            return jwt.decode(
                raw,
                settings.wikimedia_consumer_secret,
                algorithms=["HS256"],
                audience=signer.consumer_key,
                # Wikimedia sends sub as the numeric central user id.
                options={"verify_sub": False},
            )
        return jwt.get_unverified_claims(raw)
    except JWTError as e:
        logger.warning("Wikimedia identity JWT rejected: %s", e)
        raise ProtocolError("Wikimedia identity token is invalid", code="identity_error") from e


def fetch_identity(signer: OAuth1Signer, settings: Settings, access_token: TokenCredential) -> ProviderIdentity:
    """Call Special:OAuth/identify and return the verified identity.

    The request nonce must come back in the JWT's nonce claim; a mismatch
    means the response was not minted for this request.
    """
    url = OAuth1Endpoints(settings.wikimedia_base_url).identify
    nonce = generate_token(32)
    header = signer.sign("GET", url, token=access_token, nonce=nonce)
    resp = _send("GET", url, settings, "identify", headers={"Authorization": header})

    claims = decode_identity((resp.text or "").strip(), signer, settings)
    if claims.get("nonce") != nonce:
        logger.warning("Wikimedia identity nonce mismatch")
        raise ProtocolError("Wikimedia identity nonce mismatch", code="identity_error")
    return _identity_from(claims, "identify")


# ---------------------------------------------------------------------------
# OAuth 2.0
# ---------------------------------------------------------------------------


def exchange_code(settings: Settings, code: str, code_verifier: str) -> str:
    """Exchange an authorization code (plus PKCE verifier) for a provider access token."""
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": settings.wikimedia_redirect_uri,
        "client_id": settings.wikimedia_client_id,
        "code_verifier": code_verifier,
    }
    if settings.wikimedia_client_secret:
        form["client_secret"] = settings.wikimedia_client_secret
    resp = _send(
        "POST",
        _base(settings) + OAUTH2_TOKEN_PATH,
        settings,
        "token",
        data=form,
        headers={"Accept": "application/json"},
    )
    try:
        body = resp.json()
    except ValueError as e:
        raise ProtocolError("Wikimedia token response is not JSON") from e
    access_token = body.get("access_token") if isinstance(body, dict) else None
    if not access_token:
        logger.warning("Wikimedia token response had no access_token: %s", _snippet(resp))
        raise ProtocolError("Wikimedia token response did not contain an access token")
    return access_token


def fetch_profile(settings: Settings, access_token: str) -> ProviderIdentity:
    """Fetch the OAuth 2.0 user profile with a bearer token."""
    resp = _send(
        "GET",
        _base(settings) + OAUTH2_PROFILE_PATH,
        settings,
        "profile",
        headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
    )
    try:
        profile = resp.json()
    except ValueError as e:
        raise ProtocolError("Wikimedia profile response is not JSON", code="identity_error") from e
    return _identity_from(profile, "profile")


def _identity_from(data, what: str) -> ProviderIdentity:
    if not isinstance(data, dict) or not data.get("sub") or not data.get("username"):
        logger.warning("Wikimedia %s response missing sub/username", what)
        raise ProtocolError(f"Wikimedia {what} response is missing sub or username", code="identity_error")
    return ProviderIdentity(
        subject=str(data["sub"]),
        username=str(data["username"]),
        email=data.get("email") or None,
    )
