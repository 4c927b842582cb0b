"""Environment-driven configuration.

All datastore URIs, thresholds and cache tiers are read from environment
variables once, when `Settings.from_env()` is called. Services receive plain
values at construction time and never read the environment themselves.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


@dataclass
class Settings:
    """Runtime settings for the analytics and monitoring services.

    Attributes:
        environment: Deployment environment ("development", "production", ...)
        log_level: Root log level for the structured logger
        database_url: Async SQLAlchemy URL for the relational store
        mongodb_uri: MongoDB connection string
        mongodb_db_name: MongoDB database used for liveness probes
        redis_url: Redis URL for the shared key-value cache (memory store if empty)
        slow_query_threshold_ms: Operations slower than this are logged as slow
        max_slow_queries: Size of the per-database slow query log
        check_interval_seconds: Interval of automatic connection checks
        connection_timeout_seconds: Per-probe timeout
        enable_automatic_checks: Start the polling loop on application startup
        analytics_cache_ttl_seconds: TTL of derived analytics views
        cache_tier_seconds: s-maxage for the short/medium/long HTTP cache tiers
        admin_api_key: Shared secret for the admin endpoints
    """

    environment: str = 'development'
    log_level: str = 'INFO'
    database_url: str | None = None
    mongodb_uri: str = 'mongodb://localhost:27017'
    mongodb_db_name: str = 'moderation_chat'
    redis_url: str | None = None
    slow_query_threshold_ms: float = 500.0
    max_slow_queries: int = 100
    check_interval_seconds: float = 60.0
    connection_timeout_seconds: float = 5.0
    enable_automatic_checks: bool = False
    analytics_cache_ttl_seconds: int = 300
    cache_tier_seconds: dict[str, int] = field(
        default_factory=lambda: {'short': 10, 'medium': 300, 'long': 3600}
    )
    admin_api_key: str | None = None

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == 'production'

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables.

        Returns:
            Settings populated from the current environment
        """
        return cls(
            environment=os.getenv('ENVIRONMENT', 'development'),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            database_url=os.getenv('DATABASE_URL') or None,
            mongodb_uri=os.getenv('MONGODB_URI', 'mongodb://localhost:27017'),
            mongodb_db_name=os.getenv('MONGODB_DB_NAME', 'moderation_chat'),
            redis_url=os.getenv('REDIS_URL') or None,
            slow_query_threshold_ms=_env_float('SLOW_QUERY_THRESHOLD_MS', 500.0),
            max_slow_queries=_env_int('MAX_SLOW_QUERIES', 100),
            check_interval_seconds=_env_float('CONNECTION_CHECK_INTERVAL_SECONDS', 60.0),
            connection_timeout_seconds=_env_float('CONNECTION_TIMEOUT_SECONDS', 5.0),
            enable_automatic_checks=_env_bool('ENABLE_AUTOMATIC_CHECKS', False),
            analytics_cache_ttl_seconds=_env_int('ANALYTICS_CACHE_TTL_SECONDS', 300),
            cache_tier_seconds={
                'short': _env_int('CACHE_TTL_SHORT', 10),
                'medium': _env_int('CACHE_TTL_MEDIUM', 300),
                'long': _env_int('CACHE_TTL_LONG', 3600),
            },
            admin_api_key=os.getenv('ADMIN_API_KEY') or None,
        )


@lru_cache
def get_settings() -> Settings:
    """Get process settings, loading .env files on first use."""
    load_dotenv('.env')
    load_dotenv('.env.local', override=True)
    return Settings.from_env()
