"""Configuration loading and validation for grocery-sync.

Loads settings from .env via python-dotenv. Validates values when loaded
so the client fails fast with a clear error.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from pathlib import Path


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class Config:
    """Typed, validated client configuration."""

    # Required: backend root URL
    api_base_url: str

    # Transport
    request_timeout: float = 30.0

    # Retry policy
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0

    # Where the access / refresh token pair is kept between runs
    token_store_path: str = ".grocery_tokens.json"

    log_level: str = "INFO"


def load_config(env_path: str | Path | None = None) -> Config:
    """Load and validate configuration from environment / .env file.

    Args:
        env_path: Optional path to .env file. If None, searches from cwd upward.

    Returns:
        Validated Config instance.

    Raises:
        ConfigError: If required configuration is missing or malformed.
    """
    load_dotenv(dotenv_path=env_path)

    api_base_url = os.getenv("GROCERY_API_BASE_URL", "").strip()
    if not api_base_url:
        raise ConfigError(
            "GROCERY_API_BASE_URL is required. "
            "Copy .env.example to .env and set the backend URL."
        )
    if not api_base_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"GROCERY_API_BASE_URL must be an http(s) URL, got: {api_base_url!r}"
        )

    request_timeout = _parse_float("GROCERY_REQUEST_TIMEOUT", "30")
    if request_timeout <= 0:
        raise ConfigError(
            f"GROCERY_REQUEST_TIMEOUT must be positive, got: {request_timeout!r}"
        )

    retry_max_attempts = _parse_int("GROCERY_RETRY_MAX_ATTEMPTS", "3")
    if retry_max_attempts < 1:
        raise ConfigError(
            f"GROCERY_RETRY_MAX_ATTEMPTS must be at least 1, got: {retry_max_attempts!r}"
        )

    retry_base_delay = _parse_float("GROCERY_RETRY_BASE_DELAY", "1.0")
    if retry_base_delay < 0:
        raise ConfigError(
            f"GROCERY_RETRY_BASE_DELAY must not be negative, got: {retry_base_delay!r}"
        )

    log_level = os.getenv("GROCERY_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(
            f"GROCERY_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}, "
            f"got: {log_level!r}"
        )

    return Config(
        api_base_url=api_base_url.rstrip("/"),
        request_timeout=request_timeout,
        retry_max_attempts=retry_max_attempts,
        retry_base_delay=retry_base_delay,
        token_store_path=os.getenv("GROCERY_TOKEN_PATH", ".grocery_tokens.json"),
        log_level=log_level,
    )


def _parse_int(name: str, default: str) -> int:
    """Read an integer environment variable.

    Args:
        name: Variable name.
        default: Raw default value.

    Returns:
        Parsed integer.

    Raises:
        ConfigError: If the value is not an integer.
    """
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as err:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}") from err


def _parse_float(name: str, default: str) -> float:
    """Read a numeric environment variable.

    Args:
        name: Variable name.
        default: Raw default value.

    Returns:
        Parsed float.

    Raises:
        ConfigError: If the value is not a number.
    """
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as err:
        raise ConfigError(f"{name} must be a number, got: {raw!r}") from err
