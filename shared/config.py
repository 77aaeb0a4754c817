"""
Shared configuration management for the entitlement engine.
"""

from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden with an ``ENGINE_``-prefixed environment
    variable, e.g. ``ENGINE_REDIS_URL`` or ``ENGINE_LOCK_TTL_SECONDS``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Coordination and source-of-truth stores
    redis_url: str = "redis://localhost:6379/0"
    postgres_dsn: str = "postgres://localhost:5432/entitlements"
    postgres_min_pool_size: int = 2
    postgres_max_pool_size: int = 10

    # Payment collaborator (empty URL selects the sandbox gateway)
    payment_gateway_url: str = ""
    payment_api_key: str = ""
    payment_timeout_seconds: float = 10.0
    default_currency: str = "THB"

    # Duplicate suppression
    lock_ttl_seconds: int = 15

    # Rate limiting (requests per window, per actor and operation)
    rate_limit_window_seconds: int = 60
    rate_limits: Dict[str, int] = Field(default_factory=lambda: {
        "purchase": 10,
        "bulk": 5,
        "refund": 5,
        "usage": 120,
        "default": 60,
    })

    # Idempotency ledger
    idempotency_retention_days: int = 7
    idempotency_stale_after_seconds: int = 0
    maintenance_interval_seconds: int = 300

    # Purchases
    bulk_batch_size: int = 100
    bulk_max_items: int = 1000
    refund_window_days: int = 30

    # Access cache
    access_cache_ttl_seconds: int = 300


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
