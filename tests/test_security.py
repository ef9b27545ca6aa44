# tests/test_security.py
"""Tests for app/transport/security.py: security utilities."""
from __future__ import annotations

import re
from unittest.mock import patch

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from starlette.responses import Response

from app.core.dispatch.domain import Actor, Role
from app.transport.security import (
    SecurityHeaders,
    generate_secure_token,
    require_actor,
    require_roles,
    sanitize_error_message,
    validate_token_strength,
)

STRONG_TOKEN = "aB3cD5eF7gH9iJ1kL3mN5oP7qR9sT1uX"


def _build_app():
    app = FastAPI()

    @app.get("/whoami")
    def whoami(actor: Actor = Depends(require_actor)):
        return {"id": actor.id, "role": actor.role.value}

    @app.get("/ops")
    def ops(actor: Actor = Depends(require_roles(Role.DISPATCHER, Role.ADMIN))):
        return {"ok": True}

    return app


# ============================================================================
# Token validation
# ============================================================================

class TestTokenValidation:
    def test_strong_token_no_warnings(self):
        assert validate_token_strength(STRONG_TOKEN, "GATEWAY_TOKEN") == []

    def test_short_token_warning(self):
        warnings = validate_token_strength("shortAa1", "GATEWAY_TOKEN")
        assert any("too short" in w for w in warnings)

    def test_weak_pattern_warning(self):
        token = "A1" * 20 + "password"
        warnings = validate_token_strength(token, "GATEWAY_TOKEN")
        assert any("weak pattern" in w for w in warnings)

    def test_low_diversity_warning(self):
        warnings = validate_token_strength("a" * 40, "GATEWAY_TOKEN")
        assert any("diversity" in w.lower() for w in warnings)


class TestSecureTokenGeneration:
    def test_correct_length(self):
        # URL-safe base64 of 32 bytes → ~43 chars
        assert len(generate_secure_token(32)) >= 32

    def test_url_safe_chars(self):
        assert re.match(r'^[A-Za-z0-9_-]+$', generate_secure_token(32))

    def test_uniqueness(self):
        assert generate_secure_token() != generate_secure_token()


# ============================================================================
# Actor resolution
# ============================================================================

class TestRequireActor:
    def test_actor_from_headers(self):
        client = TestClient(_build_app())
        resp = client.get("/whoami", headers={"X-Actor-Id": "D1", "X-Actor-Role": "Driver"})
        assert resp.json() == {"id": "D1", "role": "driver"}

    def test_missing_role(self):
        client = TestClient(_build_app())
        assert client.get("/whoami", headers={"X-Actor-Id": "D1"}).status_code == 401

    def test_blank_id(self):
        client = TestClient(_build_app())
        resp = client.get("/whoami", headers={"X-Actor-Id": "  ", "X-Actor-Role": "driver"})
        assert resp.status_code == 401

    def test_gateway_token_checked(self):
        client = TestClient(_build_app())
        headers = {"X-Actor-Id": "D1", "X-Actor-Role": "driver"}
        with patch("app.transport.security.settings") as mock_settings:
            mock_settings.gateway_token = STRONG_TOKEN

            resp = client.get("/whoami", headers=headers)
            assert resp.status_code == 401
            assert resp.headers["WWW-Authenticate"] == "Bearer"

            resp = client.get("/whoami", headers={**headers, "Authorization": f"Bearer {STRONG_TOKEN}"})
            assert resp.status_code == 200


class TestRequireRoles:
    @pytest.mark.parametrize("role,expected", [
        ("admin", 200),
        ("dispatcher", 200),
        ("driver", 403),
        ("customer", 403),
    ])
    def test_staff_guard(self, role, expected):
        client = TestClient(_build_app())
        resp = client.get("/ops", headers={"X-Actor-Id": "u1", "X-Actor-Role": role})
        assert resp.status_code == expected


# ============================================================================
# Headers and error sanitization
# ============================================================================

class TestSecurityHeaders:
    def test_owasp_headers_present(self):
        response = SecurityHeaders.add_security_headers(Response())
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_existing_cache_control_kept(self):
        response = SecurityHeaders.add_security_headers(Response(headers={"Cache-Control": "max-age=60"}))
        assert response.headers["Cache-Control"] == "max-age=60"


class TestSanitizeErrorMessage:
    def test_dev_shows_detail(self):
        assert sanitize_error_message(ValueError("bad latitude"), is_production=False) == "bad latitude"

    def test_production_is_generic(self):
        assert sanitize_error_message(ValueError("bad latitude"), is_production=True) == "Invalid input"
        assert sanitize_error_message(RuntimeError("db"), is_production=True) == "An error occurred"
