"""
tests/test_config.py -- Settings validation rules.

Covers:
  - JWT_SECRET required outside DEBUG, auto-generated in DEBUG [M7]
  - JWT_SECRET shorter than 32 characters rejected [M6]
  - Token expiry grammar enforced at startup
  - Transient cookie lifetime capped at 15 minutes
  - DB_TYPE normalized, cookie_secure derivation
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_production_requires_secret():
    with pytest.raises(ValidationError):
        Settings(debug=False, jwt_secret="")


def test_debug_generates_secret():
    settings = Settings(debug=True, jwt_secret="")
    assert len(settings.jwt_secret) >= 32


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(debug=True, jwt_secret="too-short")


@pytest.mark.parametrize("value", ["15", "15 minutes", "1w", ""])
def test_bad_expiry_rejected(value):
    with pytest.raises(ValidationError):
        Settings(debug=True, access_token_expiry=value)


@pytest.mark.parametrize("value", [0, 901, 3600])
def test_transient_cookie_age_capped(value):
    with pytest.raises(ValidationError):
        Settings(debug=True, transient_cookie_max_age=value)


def test_db_type_normalized():
    assert Settings(debug=True, db_type=" Neon ").db_type == "neon"


def test_cookie_secure_derivation():
    assert Settings(debug=True).cookie_secure is False
    assert Settings(debug=False, jwt_secret="s" * 32).cookie_secure is True
    assert Settings(debug=True, secure_cookies=True).cookie_secure is True


def test_protocol_configured_flags():
    settings = Settings(debug=True, wikimedia_consumer_key="", wikimedia_client_id="")
    assert settings.oauth1_configured is False
    assert settings.oauth2_configured is False
