"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    from recon_engine.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.timezone == "Asia/Manila"
        assert settings.workflow_execution_stale_minutes == 30
        get_settings.cache_clear()


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from recon_engine.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_plain_postgres_url_gets_asyncpg_driver():
    from recon_engine.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host/recon")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host/recon"


def test_production_requires_api_key():
    """Production mode should refuse to start without an API key."""
    from recon_engine.config import Settings

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            api_key="",
            encryption_key="x" * 44,
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_requires_encryption_key():
    from recon_engine.config import Settings

    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            api_key="a-real-key",
            encryption_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_real_secrets():
    from recon_engine.config import Settings
    settings = Settings(
        environment="production",
        api_key="a-real-key",
        encryption_key="x" * 44,
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2,5,10", [2.0, 5.0, 10.0]),
        (" 1 , 2 ", [1.0, 2.0]),
        ("", []),
        ("3,abc,-4", [3.0, 0.0]),
    ],
)
def test_retry_backoff_schedule(raw, expected):
    from recon_engine.config import Settings
    assert Settings(fetch_retry_backoff=raw).retry_backoff_schedule == expected


def test_broker_falls_back_to_redis_url():
    from recon_engine.config import Settings
    settings = Settings(redis_url="redis://cache:6379/1")
    assert settings.broker_url == "redis://cache:6379/1"
    assert Settings(celery_broker_url="amqp://mq//").broker_url == "amqp://mq//"
