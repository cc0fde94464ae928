"""tests/test_avatar.py -- Gravatar URL derivation."""

from __future__ import annotations

from auth.avatar import gravatar_url


def test_known_digest() -> None:
    # md5("myemailaddress@example.com"), the example from Gravatar's docs
    assert gravatar_url("MyEmailAddress@example.com ") == (
        "https://www.gravatar.com/avatar/0bc83cb571cd1c50ba6f3e8a78ef1346?d=mp&s=80"
    )


def test_normalization_is_trim_and_lowercase() -> None:
    assert gravatar_url("  Alice@Example.ORG") == gravatar_url("alice@example.org")


def test_size_parameter() -> None:
    assert gravatar_url("alice@example.org", size=200).endswith("s=200")


def test_empty_email_uses_placeholder() -> None:
    assert gravatar_url(None) == "https://www.gravatar.com/avatar/" + "0" * 32 + "?d=mp&s=80"
    assert gravatar_url("   ") == gravatar_url("")
