# tests/test_config.py
"""Tests for app/config.py: production validation and risky-config warnings."""
from __future__ import annotations

import pytest

from app.config import Settings, validate_or_warn, warn_on_risky_config


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestProductionValidation:
    def test_dev_never_missing(self):
        assert _settings().validate_required_for_production() == []

    def test_prod_requires_gateway_and_real_backend(self):
        missing = _settings(app_env="prod").validate_required_for_production()
        assert "gateway_token" in missing
        assert "backend_mode=http" in missing

    def test_prod_http_requires_base_url(self):
        s = _settings(app_env="prod", backend_mode="http", gateway_token="x" * 32)
        assert s.validate_required_for_production() == ["backend_base_url"]

    def test_complete_prod_config(self):
        s = _settings(
            app_env="prod",
            backend_mode="http",
            backend_base_url="https://api.example.com/api",
            gateway_token="x" * 32,
        )
        assert s.validate_required_for_production() == []
        assert s.backend_enabled

    def test_validate_or_warn_fails_hard_in_prod(self):
        with pytest.raises(RuntimeError, match="gateway_token"):
            validate_or_warn(_settings(app_env="prod"))


class TestWarnings:
    def test_missing_gateway_token(self):
        assert any("gateway_token" in w for w in warn_on_risky_config(_settings()))

    def test_backend_push_without_http_backend(self):
        warnings = warn_on_risky_config(_settings(push_provider="backend"))
        assert any("push_provider=backend" in w for w in warnings)

    def test_http_backend_without_token(self):
        warnings = warn_on_risky_config(
            _settings(backend_mode="http", backend_base_url="https://api.example.com/api")
        )
        assert any("backend_api_token" in w for w in warnings)

    def test_route_timeout_longer_than_session(self):
        warnings = warn_on_risky_config(
            _settings(route_optimization_timeout_seconds=30, backend_timeout_seconds=10)
        )
        assert any("route_optimization_timeout_seconds" in w for w in warnings)

    def test_invalid_env_rejected(self):
        with pytest.raises(ValueError):
            _settings(app_env="qa")
