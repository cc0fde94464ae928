"""
tests/helpers.py -- Plain helper functions shared by test modules.

Kept out of conftest.py so test modules can import them directly
(tests/ is on sys.path under pytest's default rootdir-based import mode).
"""

from __future__ import annotations

import uuid

from auth.store import SQLiteProvider


def make_provider(name: str) -> SQLiteProvider:
    """Create and initialize an isolated named shared-memory SQLite provider.

    Args:
        name: Unique string in the DB name so test modules don't share state.
    """
    provider = SQLiteProvider(f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true")
    provider.initialize()
    return provider


def unique_subject() -> str:
    """A Wikimedia subject id no other test uses."""
    return str(uuid.uuid4().int % 10**12)


def set_cookie_headers(resp) -> list[str]:
    """All Set-Cookie header values of an httpx response."""
    return resp.headers.get_list("set-cookie")


def cookie_header(resp, name: str) -> str | None:
    """The Set-Cookie header for `name`, or None."""
    for header in set_cookie_headers(resp):
        if header.startswith(f"{name}="):
            return header
    return None


def is_deleted(header: str | None) -> bool:
    return header is not None and "max-age=0" in header.lower()
