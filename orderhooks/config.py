"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable.

    Falls back to the default when the variable is unset or not an integer.
    """
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        DATABASE_PATH: SQLite database file for subscriptions and the delivery ledger.
            Empty string selects the in-memory store.
        POLL_INTERVAL_SECONDS: How often the retry scheduler scans for due deliveries.
        SCHEDULER_ENABLED: Start the retry scheduler with the application.
        SCHEDULER_BATCH_SIZE: Maximum due deliveries picked up per poll cycle.
        RETRY_BASE_SECONDS: Delay before the first retry; doubles per attempt.
        RETRY_MAX_SECONDS: Upper bound on any single retry delay.
        RETRY_CLIENT_ERRORS: Retry 4xx responses like any other failure.
        MAX_CONCURRENT_DELIVERIES: Outbound HTTP calls allowed in flight at once.
        RESPONSE_BODY_LIMIT: Bytes of receiver response body read into the ledger.
        LOG_LEVEL: Logging level.
    """

    # Storage
    DATABASE_PATH: str = "data/webhooks.db"

    # Retry scheduler
    POLL_INTERVAL_SECONDS: int = 30
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_BATCH_SIZE: int = 100

    # Backoff
    RETRY_BASE_SECONDS: int = 60
    RETRY_MAX_SECONDS: int = 3600
    RETRY_CLIENT_ERRORS: bool = True

    # Delivery
    MAX_CONCURRENT_DELIVERIES: int = 20
    RESPONSE_BODY_LIMIT: int = 10_240

    # Logging
    LOG_LEVEL: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            DATABASE_PATH=os.getenv("WEBHOOK_DATABASE_PATH", "data/webhooks.db"),
            POLL_INTERVAL_SECONDS=_get_int_env("WEBHOOK_POLL_INTERVAL_SECONDS", 30),
            SCHEDULER_ENABLED=_get_bool_env("WEBHOOK_SCHEDULER_ENABLED", default=True),
            SCHEDULER_BATCH_SIZE=_get_int_env("WEBHOOK_SCHEDULER_BATCH_SIZE", 100),
            RETRY_BASE_SECONDS=_get_int_env("WEBHOOK_RETRY_BASE_SECONDS", 60),
            RETRY_MAX_SECONDS=_get_int_env("WEBHOOK_RETRY_MAX_SECONDS", 3600),
            RETRY_CLIENT_ERRORS=_get_bool_env("WEBHOOK_RETRY_CLIENT_ERRORS", default=True),
            MAX_CONCURRENT_DELIVERIES=_get_int_env("WEBHOOK_MAX_CONCURRENT_DELIVERIES", 20),
            RESPONSE_BODY_LIMIT=_get_int_env("WEBHOOK_RESPONSE_BODY_LIMIT", 10_240),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        )


# Global settings instance
settings = Settings.from_env()
