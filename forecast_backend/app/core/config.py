"""
Application configuration utilities.

This module defines the ``Settings`` class used throughout the service for
environment variables and provides helper functions to load the YAML
settings store holding the forecasting frequency and business context.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Mapping

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

# Observations per full seasonal cycle for each supported data frequency.
FREQUENCY_SEASONAL_PERIODS: dict[str, int] = {
    "daily": 7,
    "weekly": 52,
    "monthly": 12,
    "quarterly": 4,
    "yearly": 1,
}


class Settings(BaseSettings):
    """Configuration loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # API server configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_token: str | None = None

    # Locations of the YAML settings store and the observation files
    config_dir: str = "configs"
    data_dir: str = "data"

    # GEMINI API key (optional; required for advisory optimization)
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    advisory_enabled: bool = True
    advisory_failure_threshold: int = 3

    # Optimization engine
    default_seasonal_period: int = 12
    max_concurrent_skus: int = 4
    grid_workers: int = 2
    use_process_pool: bool = True
    selection_policy: str = "priority"
    cache_expiry_hours: float = 24.0


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """Return a cached instance of ``Settings``.

    Using a cache ensures that environment variables are only read once.
    """
    return Settings()


def load_yaml(file_path: str) -> dict:
    """Load a YAML file from the given path and return its contents.

    If the file does not exist, an empty dictionary is returned.
    """
    if not os.path.exists(file_path):
        return {}
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_forecast_settings(config_dir: str | None = None) -> dict[str, Any]:
    """Return the contents of ``settings.yaml`` in the configuration directory."""

    root = config_dir or get_settings().config_dir
    return load_yaml(os.path.join(root, "settings.yaml"))


def resolve_seasonal_period(store: Mapping[str, Any], default: int | None = None) -> int:
    """Return the seasonal period configured in the settings store.

    An explicit ``seasonal_period`` wins, then the period implied by
    ``frequency``, then ``default`` (or ``Settings.default_seasonal_period``).
    """

    fallback = int(default if default is not None else get_settings().default_seasonal_period)

    explicit = store.get("seasonal_period")
    if explicit is not None:
        period = int(explicit)
        if period < 1:
            raise ValueError("seasonal_period must be a positive integer")
        return period

    frequency = str(store.get("frequency", "")).strip().lower()
    return FREQUENCY_SEASONAL_PERIODS.get(frequency, fallback)
