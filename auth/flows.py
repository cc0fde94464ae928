"""
auth/flows.py -- Login flow controllers for both Wikimedia protocols.

Framework-free: no FastAPI objects enter or leave this module. Routes hand in
query parameters, the decoded flow cookie, and a ClientContext; they get back
either an authorize URL + flow state (begin) or a SessionGrant (complete).
Everything else -- cookie encoding, redirects, status codes -- is the route's
job.

OAuth 1.0a (Special:OAuth):
  begin:    request token -> authorize URL; the token secret goes into the
            flow state because the access-token call must be signed with it.
  complete: request token (from the callback) + stored secret + verifier ->
            access token -> identify -> session.

OAuth 2.0 + PKCE (rest.php/oauth2):
  begin:    fresh state + verifier -> authorize URL with the S256 challenge.
  complete: state check FIRST, then code exchange -> profile -> session.
            No provider call is made on a state mismatch.

A flow either returns a SessionGrant whose refresh token is already persisted
or raises one of the core.errors types. It never returns a partial session.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from auth.avatar import gravatar_url
from auth.models import DEFAULT_ROLES, ClientContext, RefreshToken, SessionGrant, TokenCredential, User
from auth.oauth1 import OAuth1Endpoints, OAuth1Signer
from auth.pkce import CHALLENGE_METHOD, generate_challenge, verify_state
from auth.wikimedia import (
    exchange_code,
    fetch_access_token,
    fetch_identity,
    fetch_profile,
    fetch_request_token,
    oauth2_authorize_url,
)
from core.errors import ConfigurationError, ProtocolError, TransientStateError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from auth.models import ProviderIdentity
    from auth.store import DatabaseProvider
    from auth.tokens import TokenIssuer
    from core.config import Settings

logger = logging.getLogger("wikimillionaire.auth.flows")

DEFAULT_RETURN_TO = "/"


# ---------------------------------------------------------------------------
# Flow state (what survives between begin and complete)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuth1FlowState:
    token_secret: str
    return_to: str = DEFAULT_RETURN_TO


class PKCEFlowState(BaseModel):
    """OAuth 2.0 flow state. Serialized with camelCase keys in the flow cookie."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    state: str = Field(min_length=1)
    code_verifier: str = Field(alias="codeVerifier", min_length=43, max_length=128)
    return_to: str = Field(default=DEFAULT_RETURN_TO, alias="returnTo")


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def safe_return_to(value: str | None) -> str:
    """Validate a post-login redirect target. Only accept server-relative paths.

    Rejects absolute URLs (https://evil.example), protocol-relative URLs
    (//evil.example) and the backslash variant browsers normalize to it.
    """
    if value and value.startswith("/") and not value.startswith(("//", "/\\")):
        return value
    return DEFAULT_RETURN_TO


# Width of refresh_tokens.ip_address; IPv6 zone ids can exceed it.
MAX_IP_LENGTH = 45


def _as_ip(value: str | None) -> str | None:
    try:
        address = str(ipaddress.ip_address((value or "").strip()))
    except ValueError:
        return None
    return address if len(address) <= MAX_IP_LENGTH else None


def client_ip(headers: Mapping[str, str]) -> str | None:
    """Best-effort client address: first X-Forwarded-For hop, else X-Real-IP.

    Both headers are client-controlled; anything that does not parse as an
    IPv4 or IPv6 address is discarded rather than stored.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = _as_ip(forwarded.split(",")[0])
        if first:
            return first
    return _as_ip(headers.get("x-real-ip"))


def establish_session(
    store: DatabaseProvider,
    issuer: TokenIssuer,
    identity: ProviderIdentity,
    client: ClientContext,
    return_to: str | None = DEFAULT_RETURN_TO,
) -> SessionGrant:
    """Create or update the user for `identity`, mint tokens, persist the refresh token.

    The user write is an upsert keyed on the provider subject, so two
    concurrent first logins for the same account converge on one row. An
    email in the identity refreshes the stored email and Gravatar URL; no
    email leaves both untouched.

    The refresh token is stored before the grant is returned -- a
    PersistenceError here means no cookies are ever set.
    """
    now = datetime.now(timezone.utc)
    user = store.create_user(
        User(
            username=identity.username,
            wikimedia_id=identity.subject,
            email=identity.email,
            avatar_url=gravatar_url(identity.email) if identity.email else None,
            roles=list(DEFAULT_ROLES),
            last_login=now.isoformat(timespec="seconds"),
        )
    )
    tokens = issuer.issue_pair(user, now=now)
    store.store_refresh_token(
        RefreshToken(
            user_id=user.id,
            token=tokens.refresh_token,
            expires_at=tokens.refresh_expires_at,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )
    )
    logger.info("Session established for user_id=%s", user.id)
    return SessionGrant(user=user, tokens=tokens, return_to=safe_return_to(return_to))


# ---------------------------------------------------------------------------
# OAuth 1.0a
# ---------------------------------------------------------------------------


class OAuth1Flow:
    """Special:OAuth login. Construction fails with ConfigurationError if
    the consumer key or secret is missing."""

    def __init__(self, settings: Settings, store: DatabaseProvider, issuer: TokenIssuer) -> None:
        self.settings = settings
        self.store = store
        self.issuer = issuer
        self.signer = OAuth1Signer.from_settings(settings)
        self.endpoints = OAuth1Endpoints(settings.wikimedia_base_url)

    def begin(self, return_to: str | None = None) -> tuple[str, OAuth1FlowState]:
        request_token = fetch_request_token(self.signer, self.settings)
        url = self.endpoints.authorize_url(request_token.key, self.signer.consumer_key)
        return url, OAuth1FlowState(token_secret=request_token.secret, return_to=safe_return_to(return_to))

    def complete(
        self,
        oauth_token: str | None,
        oauth_verifier: str | None,
        flow_state: OAuth1FlowState | None,
        client: ClientContext,
    ) -> SessionGrant:
        if flow_state is None or not flow_state.token_secret:
            raise TransientStateError("OAuth 1.0a token secret cookie is missing")
        if not oauth_token or not oauth_verifier:
            raise ProtocolError("Callback is missing oauth_token or oauth_verifier", code="missing_parameters")

        request_token = TokenCredential(key=oauth_token, secret=flow_state.token_secret)
        access_token = fetch_access_token(self.signer, self.settings, request_token, oauth_verifier)
        identity = fetch_identity(self.signer, self.settings, access_token)
        return establish_session(self.store, self.issuer, identity, client, flow_state.return_to)


# ---------------------------------------------------------------------------
# OAuth 2.0 + PKCE
# ---------------------------------------------------------------------------


class OAuth2Flow:
    """rest.php/oauth2 login with PKCE (S256)."""

    def __init__(self, settings: Settings, store: DatabaseProvider, issuer: TokenIssuer) -> None:
        if not settings.oauth2_configured:
            raise ConfigurationError("Missing OAuth 2.0 client id or redirect URI")
        self.settings = settings
        self.store = store
        self.issuer = issuer

    def begin(self, return_to: str | None = None) -> tuple[str, PKCEFlowState]:
        challenge = generate_challenge()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.settings.wikimedia_client_id,
                "redirect_uri": self.settings.wikimedia_redirect_uri,
                "state": challenge.state,
                "code_challenge": challenge.code_challenge,
                "code_challenge_method": CHALLENGE_METHOD,
            }
        )
        flow_state = PKCEFlowState(
            state=challenge.state,
            code_verifier=challenge.code_verifier,
            return_to=safe_return_to(return_to),
        )
        return f"{oauth2_authorize_url(self.settings)}?{query}", flow_state

    def complete(
        self,
        code: str | None,
        state: str | None,
        flow_state: PKCEFlowState | None,
        client: ClientContext,
    ) -> SessionGrant:
        if flow_state is None:
            raise TransientStateError("OAuth 2.0 flow state cookie is missing")
        verify_state(flow_state.state, state)
        if not code:
            raise ProtocolError("Callback is missing the authorization code", code="missing_parameters")

        provider_token = exchange_code(self.settings, code, flow_state.code_verifier)
        identity = fetch_profile(self.settings, provider_token)
        return establish_session(self.store, self.issuer, identity, client, flow_state.return_to)
