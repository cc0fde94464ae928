"""
auth/pkce.py -- OAuth 2.0 PKCE (RFC 7636) values for the Wikimedia OAuth 2.0 flow.

state and code_verifier are hex-encoded random bytes (16 and 64 bytes), so
the verifier is 128 characters from the unreserved set and within RFC 7636's
43-128 character window. The challenge uses the S256 method only; "plain" is
never offered.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass

from authlib.oauth2.rfc7636 import create_s256_code_challenge

from core.errors import ProtocolError

CHALLENGE_METHOD = "S256"

_STATE_BYTES = 16
_VERIFIER_BYTES = 64


@dataclass(frozen=True)
class PKCEChallenge:
    state: str
    code_verifier: str
    code_challenge: str


def generate_challenge() -> PKCEChallenge:
    """Generate a fresh state / verifier / S256 challenge triple."""
    code_verifier = secrets.token_hex(_VERIFIER_BYTES)
    return PKCEChallenge(
        state=secrets.token_hex(_STATE_BYTES),
        code_verifier=code_verifier,
        code_challenge=create_s256_code_challenge(code_verifier),
    )


def verify_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Return True if `code_challenge` is the S256 challenge of `code_verifier`."""
    if not code_verifier or not code_challenge:
        return False
    expected = create_s256_code_challenge(code_verifier)
    return hmac.compare_digest(expected.encode(), code_challenge.encode())


def verify_state(expected: str | None, received: str | None) -> None:
    """Raise ProtocolError unless the callback state equals the stored state.

    Empty values never match, so a missing cookie field cannot be satisfied
    by an empty query parameter.
    """
    if not expected or not received or not hmac.compare_digest(expected.encode(), received.encode()):
        raise ProtocolError("OAuth state mismatch", code="state_mismatch")
