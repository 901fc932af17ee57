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
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        WEBHOOK_DB_PATH: SQLite database file holding registrations and deliveries.
        WEBHOOK_DELIVERY_TIMEOUT: Hard timeout for one delivery attempt, in seconds.
        WEBHOOK_MAX_CONCURRENT_DELIVERIES: Outbound requests allowed in flight at once.
        WEBHOOK_USER_AGENT: Client identifier sent with every delivery.
        LOG_LEVEL: Logging level.
        LOG_JSON: Render logs as JSON lines instead of the console format.
    """

    # Storage
    WEBHOOK_DB_PATH: str = "./data/webhooks.db"

    # Delivery
    WEBHOOK_DELIVERY_TIMEOUT: float = 30.0
    WEBHOOK_MAX_CONCURRENT_DELIVERIES: int = 8
    WEBHOOK_USER_AGENT: str = "LocalPay-Webhook/1.0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            WEBHOOK_DB_PATH=os.getenv("WEBHOOK_DB_PATH", "./data/webhooks.db"),
            WEBHOOK_DELIVERY_TIMEOUT=_get_float_env("WEBHOOK_DELIVERY_TIMEOUT", 30.0),
            WEBHOOK_MAX_CONCURRENT_DELIVERIES=_get_int_env("WEBHOOK_MAX_CONCURRENT_DELIVERIES", 8),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "LocalPay-Webhook/1.0"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_JSON=_get_bool_env("LOG_JSON", default=False),
        )


# Global settings instance
settings = Settings.from_env()
