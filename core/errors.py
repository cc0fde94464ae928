"""
core/errors.py -- Error taxonomy for the authentication core.

Every failure in a login flow is one of these. None of them permits issuing a
session with an unverified identity -- routes turn ProtocolError and
TransientStateError into a redirect to the error page, PersistenceError and
ConfigurationError into a 500, and TokenError into "not authenticated".

Each error carries a stable machine code. The error page looks the code up in
ERROR_MESSAGES and renders only that whitelisted text [M3], so a crafted
?error= query string can never reach the template.

Layer rule: core/ is the kernel. No imports from api/, web/, or auth/.
"""

from __future__ import annotations

ERROR_MESSAGES: dict[str, str] = {
    "configuration_error": "Login is not available right now. Please try again later.",
    "missing_parameters": "The login response was incomplete. Please try logging in again.",
    "missing_flow_state": "Your login session expired or was already used. Please try logging in again.",
    "invalid_flow_state": "Your login session could not be read. Please try logging in again.",
    "state_mismatch": "The login response did not match your login attempt. Please try logging in again.",
    "provider_denied": "Authorization was cancelled at Wikimedia.",
    "provider_error": "Wikimedia could not complete the login. Please try again.",
    "identity_error": "Wikimedia did not return a usable identity. Please try again.",
    "persistence_error": "We could not save your session. Please try again later.",
    "invalid_token": "Your session is invalid or has expired. Please log in again.",
}

DEFAULT_ERROR_CODE = "provider_error"


class AuthError(Exception):
    """Base class for all authentication-core failures."""

    code = "auth_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def public_message(self) -> str:
        """User-facing text for this error. Internal detail stays in logs."""
        return ERROR_MESSAGES.get(self.code, ERROR_MESSAGES[DEFAULT_ERROR_CODE])


class ConfigurationError(AuthError):
    """Missing credentials, malformed durations, unknown backend. Fatal."""

    code = "configuration_error"


class ProtocolError(AuthError):
    """The identity provider rejected an exchange or answered with garbage."""

    code = "provider_error"


class TransientStateError(AuthError):
    """The flow cookie is missing, malformed, expired, or already consumed."""

    code = "missing_flow_state"


class PersistenceError(AuthError):
    """The database could not complete an auth-relevant operation."""

    code = "persistence_error"


class DatabaseError(PersistenceError):
    """Backend-neutral wrapper for every driver / SQLAlchemy error.

    Callers catch this (or PersistenceError) and never a backend-specific
    exception type.
    """


class TokenError(AuthError):
    """Signature, expiry, issuer, audience, or type mismatch on a token."""

    code = "invalid_token"
