import pytest
from pydantic import ValidationError

from idprovider.config import Settings, SigningAlgorithm, get_settings, reset_settings_cache


def test_defaults_match_token_lifetimes(monkeypatch):
    monkeypatch.delenv("JWT_EXPIRATION_MS", raising=False)
    monkeypatch.delenv("JWT_REFRESH_EXPIRATION_MS", raising=False)
    settings = Settings.from_env()

    assert settings.access_token_ttl_ms == 900_000
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 30 * 24 * 60 * 60
    assert settings.jwt_algorithm is SigningAlgorithm.HS256


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("JWT_EXPIRATION_MS", "60000")
    monkeypatch.setenv("JWT_ALGORITHM", "HS512")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")
    monkeypatch.setenv("ALLOW_SIGNUP", "false")

    settings = Settings.from_env()

    assert settings.access_token_ttl_seconds == 60
    assert settings.jwt_algorithm is SigningAlgorithm.HS512
    assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]
    assert settings.allow_signup is False


def test_rejects_non_positive_ttl(monkeypatch):
    monkeypatch.setenv("JWT_REFRESH_EXPIRATION_MS", "0")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_rejects_unknown_algorithm(monkeypatch):
    monkeypatch.setenv("JWT_ALGORITHM", "RS256")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_generated_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret

    assert len(first) >= 32
    assert first == second
    assert (tmp_path / ".jwt_secret").read_text() == first


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    assert get_settings() is cached
    reset_settings_cache()
    assert get_settings() is not cached
