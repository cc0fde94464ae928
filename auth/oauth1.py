"""
auth/oauth1.py -- OAuth 1.0a HMAC-SHA1 request signing for Wikimedia.

Wikimedia's classic OAuth endpoints (Special:OAuth/initiate, /token,
/identify) authenticate every call with an RFC 5849 signature instead of a
bearer token. OAuth1Signer turns (method, url, params, token credential) into
a ready-to-send Authorization header.

Signature base string (RFC 5849 section 3.4.1):
  METHOD & escape(base URI without query) & escape(sorted, escaped params)
where params = URL query params + form body params + every oauth_* param
except oauth_signature. Wikimedia's endpoints live under
index.php?title=Special:OAuth/..., so the title query parameter is part of
every signature -- leaving it out is the classic "invalid signature" bug.

HMAC key: escape(consumer_secret) & escape(token_secret), token_secret
empty for the initial request-token call.

Authlib provides the RFC 5849 primitives (base string normalization, HMAC-SHA1,
escaping); this module owns parameter assembly and header formatting so the
nonce is known to the caller (the identify response echoes it back).

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import time
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit

from authlib.common.security import generate_token
from authlib.oauth1.rfc5849.signature import construct_base_string, hmac_sha1_signature
from authlib.oauth1.rfc5849.util import escape, unescape

from core.errors import ConfigurationError

if TYPE_CHECKING:
    from auth.models import TokenCredential
    from core.config import Settings

SIGNATURE_METHOD = "HMAC-SHA1"
OAUTH_VERSION = "1.0"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class OAuth1Endpoints:
    """Special:OAuth endpoint URLs for one MediaWiki host."""

    def __init__(self, base_url: str) -> None:
        index = f"{base_url.rstrip('/')}/w/index.php"
        self.request_token = f"{index}?title=Special:OAuth/initiate"
        self.authorize = f"{index}?title=Special:OAuth/authorize"
        self.access_token = f"{index}?title=Special:OAuth/token"
        self.identify = f"{index}?title=Special:OAuth/identify"

    def authorize_url(self, request_token: str, consumer_key: str) -> str:
        query = urlencode({"oauth_token": request_token, "oauth_consumer_key": consumer_key})
        return f"{self.authorize}&{query}"


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------


def format_authorization_header(oauth_params: dict[str, str]) -> str:
    """Render oauth_* parameters as an RFC 5849 section 3.5.1 header value."""
    pairs = ", ".join(f'{escape(k)}="{escape(v)}"' for k, v in sorted(oauth_params.items()))
    return f"OAuth {pairs}"


def parse_authorization_header(header: str) -> dict[str, str]:
    """Inverse of format_authorization_header(). Returns {} for non-OAuth headers."""
    if not header or not header.startswith("OAuth "):
        return {}
    params: dict[str, str] = {}
    for item in header[len("OAuth ") :].split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        params[unescape(key)] = unescape(value.strip('"'))
    return params


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


class OAuth1Signer:
    """Signs outbound requests with the consumer key/secret.

    A missing key or secret is a startup-time misconfiguration, not a
    per-request error, so the constructor raises ConfigurationError.

    Usage:
        signer = OAuth1Signer.from_settings(settings)
        header = signer.sign("POST", url, oauth_params={"oauth_callback": "oob"})
        header = signer.sign("GET", identify_url, token=access_token)
    """

    def __init__(self, consumer_key: str, consumer_secret: str) -> None:
        if not consumer_key or not consumer_secret:
            raise ConfigurationError("Missing OAuth 1.0a consumer credentials")
        self.consumer_key = consumer_key
        self._consumer_secret = consumer_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> OAuth1Signer:
        return cls(settings.wikimedia_consumer_key, settings.wikimedia_consumer_secret)

    def oauth_params(
        self,
        token: TokenCredential | None = None,
        extra: dict[str, str] | None = None,
        nonce: str | None = None,
        timestamp: int | None = None,
    ) -> dict[str, str]:
        """Return the unsigned oauth_* protocol parameters for one request."""
        params = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_nonce": nonce or generate_token(32),
            "oauth_signature_method": SIGNATURE_METHOD,
            "oauth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
            "oauth_version": OAUTH_VERSION,
        }
        if token is not None:
            params["oauth_token"] = token.key
        if extra:
            params.update(extra)
        return params

    def signature(
        self,
        method: str,
        url: str,
        oauth_params: dict[str, str],
        token_secret: str = "",
        body_params: dict[str, str] | None = None,
    ) -> str:
        """Compute the base64 HMAC-SHA1 signature over the request's base string."""
        params = [(k, v) for k, v in oauth_params.items() if k != "oauth_signature"]
        params.extend(parse_qsl(urlsplit(url).query, keep_blank_values=True))
        if body_params:
            params.extend(body_params.items())
        base_string = construct_base_string(method.upper(), url, params)
        return hmac_sha1_signature(base_string, self._consumer_secret, token_secret)

    def sign(
        self,
        method: str,
        url: str,
        token: TokenCredential | None = None,
        oauth_params: dict[str, str] | None = None,
        body_params: dict[str, str] | None = None,
        nonce: str | None = None,
        timestamp: int | None = None,
    ) -> str:
        """Return a signed Authorization header value for the request.

        Args:
            method:       HTTP method; case-insensitive.
            url:          Full target URL including its query string.
            token:        Request or access token credential. None for the
                          initial request-token call.
            oauth_params: Extra protocol parameters (oauth_callback,
                          oauth_verifier) that travel in the header.
            body_params:  Form-encoded body parameters; signed, not sent.
            nonce:        Override the random nonce (identify needs to know it).
            timestamp:    Override the current Unix time.
        """
        params = self.oauth_params(token=token, extra=oauth_params, nonce=nonce, timestamp=timestamp)
        token_secret = token.secret if token is not None else ""
        params["oauth_signature"] = self.signature(method, url, params, token_secret, body_params)
        return format_authorization_header(params)

    def verify(
        self,
        method: str,
        url: str,
        authorization: str,
        token_secret: str = "",
        body_params: dict[str, str] | None = None,
    ) -> bool:
        """Recompute the signature carried in `authorization` and compare in constant time.

        Any change to the signature, a signed parameter, the method, or the
        URL makes this return False.
        """
        params = parse_authorization_header(authorization)
        presented = params.pop("oauth_signature", "")
        if not presented or params.get("oauth_consumer_key") != self.consumer_key:
            return False
        expected = self.signature(method, url, params, token_secret, body_params)
        return hmac.compare_digest(expected.encode(), presented.encode())
