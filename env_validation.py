"""Environment variable validation and management."""

import math
import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate scoring-engine environment variables.

    Raises ConfigurationError if validation fails.
    """
    defaults = {
        "DB_PATH": "data.db",
        "CX_ROLLING_ALPHA": "0.25",
        "CX_MODERATION_ENABLED": "true",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    get_rolling_alpha()

    raw_flag = os.getenv("CX_MODERATION_ENABLED", "")
    if raw_flag.lower() not in _TRUE_VALUES | _FALSE_VALUES:
        raise ConfigurationError(f"Invalid boolean for CX_MODERATION_ENABLED: {raw_flag}")

    optional_vars: Dict[str, str] = {
        "CX_LOG_LEVEL": "Log level for the scoring engines",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)


_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in _TRUE_VALUES


def get_env_float(name: str, default: float) -> float:
    """Get a finite float from an environment variable."""
    value: Optional[str] = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid number for {name}: {value}") from exc
    if not math.isfinite(number):
        raise ConfigurationError(f"Invalid number for {name}: {value}")
    return number


def get_rolling_alpha() -> float:
    """Return the EMA weight for rolling trait stats, validated to (0, 1]."""
    alpha = get_env_float("CX_ROLLING_ALPHA", 0.25)
    if not 0.0 < alpha <= 1.0:
        raise ConfigurationError(f"CX_ROLLING_ALPHA must be in (0, 1], got {alpha}")
    return alpha
