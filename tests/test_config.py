"""
Settings and SecurityConfig preset tests.
"""

import pytest
from pydantic import ValidationError

from app.core.config import Settings
from app.core.security import SecurityConfig


def make_settings(**values) -> Settings:
    values.setdefault("password_pepper", "pepper")
    return Settings(_env_file=None, **values)


def test_comma_separated_lists(monkeypatch):
    monkeypatch.setenv("TRUSTED_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("IP_DENY_LIST", "10.0.0.0/8")
    monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.0/8,172.16.0.1")
    settings = make_settings()
    assert settings.trusted_origins == ["https://a.example", "https://b.example"]
    assert settings.ip_deny_list == ["10.0.0.0/8"]
    assert settings.trusted_proxies == ["10.0.0.0/8", "172.16.0.1"]


def test_production_requires_pepper(monkeypatch):
    monkeypatch.delenv("PASSWORD_PEPPER", raising=False)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, environment="production")


def test_development_generates_ephemeral_pepper(monkeypatch):
    monkeypatch.delenv("PASSWORD_PEPPER", raising=False)
    with pytest.warns(RuntimeWarning):
        settings = Settings(_env_file=None, environment="development")
    assert settings.password_pepper
    assert settings.password_pepper_auto_generated


def test_bcrypt_cost_bounds():
    with pytest.raises(ValidationError):
        make_settings(bcrypt_cost=3)


def test_password_length_bounds():
    with pytest.raises(ValidationError):
        make_settings(password_min_length=20, password_max_length=10)


# =============================================================================
# Presets
# =============================================================================

def test_production_preset():
    config = SecurityConfig.from_settings(make_settings(environment="production", cors_origins=["*"]))
    assert config.production
    assert config.headers.hsts_enabled
    assert config.validation.strict_mode
    assert config.rate_limit.penalty_enabled
    assert config.csrf.secure
    assert config.csrf.same_site == "strict"
    assert config.cors.production


def test_development_preset():
    config = SecurityConfig.from_settings(make_settings(environment="development", trusted_ips=["10.0.0.5"]))
    assert not config.production
    assert not config.validation.strict_mode
    assert not config.rate_limit.penalty_enabled
    assert not config.csrf.secure
    assert "http://localhost:*" in config.csrf.trusted_origins
    assert config.csrf.trusted_ips == ["10.0.0.5"]
    assert "'unsafe-eval'" in config.headers.csp["script-src"]


def test_staging_uses_strict_defaults():
    config = SecurityConfig.from_settings(make_settings(environment="staging"))
    assert config.validation.strict_mode
    assert config.rate_limit.penalty_enabled
    assert not config.headers.hsts_enabled


def test_explicit_overrides_beat_presets():
    config = SecurityConfig.from_settings(make_settings(
        environment="development",
        validation_strict_mode=True,
        rate_limit_penalty_enabled=True,
    ))
    assert config.validation.strict_mode
    assert config.rate_limit.penalty_enabled


def test_stage_flags():
    config = SecurityConfig.from_settings(make_settings(environment="staging", csrf_enabled=False))
    flags = config.stage_flags()
    assert flags["csrf"] is False
    assert flags["input_validation"] is True
    assert set(flags) == {
        "security_headers", "cors", "input_validation", "api_key_auth",
        "rate_limit", "csrf", "audit", "monitoring",
    }


def test_audit_settings_flow_through(tmp_path):
    config = SecurityConfig.from_settings(make_settings(
        audit_log_dir=str(tmp_path), audit_retention_days=7, audit_max_file_size_mb=1,
    ))
    assert config.audit.log_dir == str(tmp_path)
    assert config.audit.retention.days == 7
    assert config.audit.max_file_size == 1024 * 1024
