"""auth/avatar.py -- Deterministic Gravatar URL for a user's email."""

from __future__ import annotations

import hashlib

_GRAVATAR = "https://www.gravatar.com/avatar/{digest}?d=mp&s={size}"
_EMPTY_DIGEST = "0" * 32


def gravatar_url(email: str | None, size: int = 80) -> str:
    """Return the Gravatar URL for `email` (trimmed, lowercased, MD5-hashed).

    Gravatar keys images by MD5; it is an identifier here, not a security
    control. An empty email yields the generic "mystery person" image.
    """
    if not email or not email.strip():
        return _GRAVATAR.format(digest=_EMPTY_DIGEST, size=size)
    digest = hashlib.md5(email.strip().lower().encode("utf-8"), usedforsecurity=False).hexdigest()
    return _GRAVATAR.format(digest=digest, size=size)
