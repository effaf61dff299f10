"""
Configuration loading for journey-core.

Loads non-secret settings from config.yaml, TfL credentials and the service
API key from environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_STATUS_MODES = [
    "tube",
    "bus",
    "dlr",
    "overground",
    "tram",
    "river-bus",
    "cable-car",
]


def _dedupe(keys: list[str]) -> list[str]:
    """Drop blanks and repeats, keeping the first occurrence of each key."""
    seen: list[str] = []
    for key in keys:
        key = key.strip()
        if key and key not in seen:
            seen.append(key)
    return seen


def _split_env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


class AppConfig(BaseModel):
    """Application configuration. Secrets come from env vars, rest from YAML."""

    # Secrets (from environment only)
    tfl_api_keys: list[str] = Field(default_factory=list)
    tfl_primary_api_key: Optional[str] = None
    tfl_secondary_api_key: Optional[str] = None
    tfl_autofetch_api_keys: list[str] = Field(default_factory=list)
    api_key: Optional[str] = None

    # TfL settings
    tfl_base_url: str = "https://api.tfl.gov.uk"
    request_timeout: float = Field(default=10.0, gt=0)
    default_cooldown: float = Field(default=60.0, gt=0)
    status_modes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STATUS_MODES), min_length=1
    )

    # Snapshot cache settings
    max_snapshot_age: int = Field(default=120, ge=1)

    @field_validator("tfl_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("status_modes")
    @classmethod
    def normalize_modes(cls, value: list[str]) -> list[str]:
        return [mode.strip().lower() for mode in value if mode.strip()]

    def credential_pool(self) -> list[str]:
        """
        Ordered, de-duplicated credentials for interactive calls.

        An explicit key list wins over the primary/secondary pair.
        """
        if self.tfl_api_keys:
            return _dedupe(self.tfl_api_keys)
        legacy = [self.tfl_primary_api_key, self.tfl_secondary_api_key]
        return _dedupe([key for key in legacy if key])

    def autofetch_pool(self) -> list[str]:
        """Credentials reserved for snapshot refreshes; falls back to the main pool."""
        keys = _dedupe(self.tfl_autofetch_api_keys)
        return keys or self.credential_pool()


def load_config(config_path: str | None = None) -> AppConfig:
    """
    Load configuration from YAML file + environment variables.

    Args:
        config_path: Path to config.yaml. If None, reads CONFIG_PATH env var
                     (default: config.yaml in current directory).

    Returns:
        Validated AppConfig instance.
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    # Inject secrets from environment (never from YAML)
    config_data = {
        **raw,
        "tfl_api_keys": _split_env_list("TFL_API_KEYS"),
        "tfl_primary_api_key": os.environ.get("TFL_PRIMARY_API_KEY") or None,
        "tfl_secondary_api_key": os.environ.get("TFL_SECONDARY_API_KEY") or None,
        "tfl_autofetch_api_keys": _split_env_list("TFL_AUTOFETCH_API_KEYS"),
        "api_key": os.environ.get("API_KEY"),
    }

    return AppConfig(**config_data)
