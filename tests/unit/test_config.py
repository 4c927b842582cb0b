"""Tests for environment-driven settings."""

import pytest

from analytics_server.config import Settings

ENV_NAMES = (
    'ENVIRONMENT', 'LOG_LEVEL', 'DATABASE_URL', 'MONGODB_URI', 'REDIS_URL',
    'SLOW_QUERY_THRESHOLD_MS', 'ENABLE_AUTOMATIC_CHECKS', 'CACHE_TTL_SHORT', 'ADMIN_API_KEY',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings.from_env()

    assert settings.environment == 'development'
    assert settings.database_url is None
    assert settings.redis_url is None
    assert settings.slow_query_threshold_ms == 500.0
    assert settings.cache_tier_seconds == {'short': 10, 'medium': 300, 'long': 3600}
    assert settings.is_production is False


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv('ENVIRONMENT', 'Production')
    monkeypatch.setenv('LOG_LEVEL', 'debug')
    monkeypatch.setenv('DATABASE_URL', 'postgresql+psycopg://u:p@db/app')
    monkeypatch.setenv('SLOW_QUERY_THRESHOLD_MS', '250')
    monkeypatch.setenv('ENABLE_AUTOMATIC_CHECKS', 'true')
    monkeypatch.setenv('CACHE_TTL_SHORT', '5')
    monkeypatch.setenv('ADMIN_API_KEY', 'secret')

    settings = Settings.from_env()

    assert settings.is_production is True
    assert settings.log_level == 'DEBUG'
    assert settings.database_url == 'postgresql+psycopg://u:p@db/app'
    assert settings.slow_query_threshold_ms == 250.0
    assert settings.enable_automatic_checks is True
    assert settings.cache_tier_seconds['short'] == 5
    assert settings.admin_api_key == 'secret'


def test_blank_values_mean_unset(monkeypatch):
    monkeypatch.setenv('DATABASE_URL', '')
    monkeypatch.setenv('SLOW_QUERY_THRESHOLD_MS', ' ')
    settings = Settings.from_env()
    assert settings.database_url is None
    assert settings.slow_query_threshold_ms == 500.0


def test_invalid_number_raises(monkeypatch):
    monkeypatch.setenv('SLOW_QUERY_THRESHOLD_MS', 'fast')
    with pytest.raises(ValueError):
        Settings.from_env()
