"""
tests/test_error_page.py -- GET /auth/error renders only whitelisted messages.

Covers:
  - Known codes render their ERROR_MESSAGES text
  - Unknown codes and markup in ?error= fall back to the generic message and
    are never reflected [M3]
"""

from __future__ import annotations

import pytest

from core.errors import DEFAULT_ERROR_CODE, ERROR_MESSAGES


@pytest.mark.parametrize("code", ["state_mismatch", "missing_flow_state", "provider_denied"])
def test_known_code(client, code):
    resp = client.get("/auth/error", params={"error": code})
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert ERROR_MESSAGES[code] in resp.text


def test_unknown_code_is_generic(client):
    resp = client.get("/auth/error", params={"error": "made_up"})
    assert ERROR_MESSAGES[DEFAULT_ERROR_CODE] in resp.text
    assert "made_up" not in resp.text


def test_markup_is_not_reflected(client):
    resp = client.get("/auth/error", params={"error": "<script>alert(1)</script>"})
    assert resp.status_code == 200
    assert "<script>" not in resp.text


def test_no_code(client):
    resp = client.get("/auth/error")
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
