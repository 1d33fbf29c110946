# tests/test_config.py — Settings validation
import pytest

from config import Settings, ConfigurationError, get_settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DATABASE_URL", "SESSION_SECRET", "ENVIRONMENT", "GOOGLE_CLIENT_ID",
                 "GOOGLE_CLIENT_SECRET", "SESSION_COOKIE_SECURE"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def fresh_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_database_url_is_required(clean_env, fresh_settings_cache):
    with pytest.raises(ConfigurationError, match="DATABASE_URL is required"):
        get_settings()


def test_minimal_development_config(clean_env):
    clean_env.setenv("DATABASE_URL", "sqlite+aiosqlite:///./dev.db")
    settings = Settings(_env_file=None)
    assert settings.ENVIRONMENT == "development"
    # an ephemeral secret is generated outside production
    assert len(settings.SESSION_SECRET) > 32
    assert settings.SESSION_COOKIE_SECURE is False
    assert settings.SESSION_MAX_AGE_SECONDS == 604800
    assert settings.google_oauth_enabled is False


def test_production_requires_session_secret(clean_env):
    clean_env.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/taskhub")
    clean_env.setenv("ENVIRONMENT", "production")
    with pytest.raises(ValueError, match="SESSION_SECRET"):
        Settings(_env_file=None)


def test_production_cookie_is_secure(clean_env):
    clean_env.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/taskhub")
    clean_env.setenv("ENVIRONMENT", "production")
    clean_env.setenv("SESSION_SECRET", "x" * 48)
    assert Settings(_env_file=None).SESSION_COOKIE_SECURE is True


def test_half_configured_google_is_rejected(clean_env):
    clean_env.setenv("DATABASE_URL", "sqlite+aiosqlite:///./dev.db")
    clean_env.setenv("GOOGLE_CLIENT_ID", "only-the-id")
    with pytest.raises(ValueError, match="GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET"):
        Settings(_env_file=None)


def test_google_enabled_with_both(clean_env):
    clean_env.setenv("DATABASE_URL", "sqlite+aiosqlite:///./dev.db")
    clean_env.setenv("GOOGLE_CLIENT_ID", "id")
    clean_env.setenv("GOOGLE_CLIENT_SECRET", "secret")
    assert Settings(_env_file=None).google_oauth_enabled is True


def test_cors_origins_parsing(clean_env):
    clean_env.setenv("DATABASE_URL", "sqlite+aiosqlite:///./dev.db")
    clean_env.setenv("CORS_ORIGINS", "https://a.example, https://b.example ,")
    assert Settings(_env_file=None).cors_origins == ["https://a.example", "https://b.example"]
