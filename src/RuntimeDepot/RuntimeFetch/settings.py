# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.settings",
#   "purpose": "Pydantic configuration models, environment overrides, and YAML loading",
#   "sections": [
#     {"id": "models", "name": "Configuration models", "anchor": "MOD", "kind": "api"},
#     {"id": "env", "name": "Environment overrides", "anchor": "ENV", "kind": "api"},
#     {"id": "loading", "name": "Loading & defaults", "anchor": "LOD", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Configuration for the runtime client.

Settings come from three layers, later ones winning: model defaults, an
optional YAML file, and ``RUNTIMEDEPOT_*`` environment variables read through
pydantic-settings.  The base directory defaults to ``RUNTIMEDEPOT_HOME`` or
the platform's user data directory.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import platformdirs
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "APP_NAME",
    "LoggingConfiguration",
    "HttpConfiguration",
    "IndexRepositoryConfiguration",
    "RuntimeDepotSettings",
    "EnvironmentOverrides",
    "user_directory",
    "get_default_settings",
    "invalidate_default_settings_cache",
    "load_raw_yaml",
    "load_settings",
    "build_settings",
]

APP_NAME = "runtimedepot"

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.settings")


def user_directory() -> Path:
    """Return the default base directory for the inventory and repository caches."""

    override = os.environ.get("RUNTIMEDEPOT_HOME")
    if override:
        return Path(override).expanduser()
    return platformdirs.user_data_path(APP_NAME)


# ============================================================================
# Configuration models (MOD)
# ============================================================================


class LoggingConfiguration(BaseModel):
    """Logging-related configuration."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    max_log_size_mb: int = Field(default=20, gt=0, description="Maximum size of rotated log files")
    retention_days: int = Field(default=30, ge=1, description="Retention period for log files")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON log files")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Normalise logging levels and ensure they match the supported set."""

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return upper

    model_config = {"validate_assignment": True}


class HttpConfiguration(BaseModel):
    """HTTP client, retry and streaming settings."""

    timeout_sec: float = Field(default=60.0, gt=0, description="Read/write timeout in seconds")
    connect_timeout_sec: float = Field(default=10.0, gt=0)
    max_connections: int = Field(default=16, ge=1)
    max_keepalive_connections: int = Field(default=8, ge=0)
    max_retries: int = Field(default=3, ge=0, description="Index fetch retries after the first attempt")
    backoff_factor: float = Field(default=0.5, ge=0, description="Exponential backoff base in seconds")
    chunk_size: int = Field(default=1 << 16, ge=1024, description="Streaming chunk size in bytes")
    user_agent: str = Field(default=f"{APP_NAME}/0.1.0")

    model_config = {"validate_assignment": True, "extra": "ignore"}


class IndexRepositoryConfiguration(BaseModel):
    """A repository whose runtimes are published as an XML index document."""

    uri: str = Field(description="Stable identifier of the repository")
    url: str = Field(description="Location of the index document")
    name: Optional[str] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://", "file://")):
            raise ValueError("url must use http, https or file scheme")
        return value

    model_config = {"extra": "forbid"}


class RuntimeDepotSettings(BaseModel):
    """Resolved settings for one client."""

    base_directory: Path = Field(default_factory=user_directory)
    workers: Optional[int] = Field(default=None, ge=1, description="Worker pool size")
    load_plugins: bool = Field(default=True, description="Discover providers from entry points")
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)
    http: HttpConfiguration = Field(default_factory=HttpConfiguration)
    repositories: List[IndexRepositoryConfiguration] = Field(default_factory=list)

    @field_validator("base_directory", mode="before")
    @classmethod
    def expand_base_directory(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        return value

    model_config = {"validate_assignment": True, "extra": "forbid"}


# ============================================================================
# Environment overrides (ENV)
# ============================================================================


class EnvironmentOverrides(BaseSettings):
    """Pydantic settings model exposing environment-derived overrides."""

    home: Optional[Path] = None
    workers: Optional[int] = None
    log_level: Optional[str] = None
    timeout_sec: Optional[float] = None
    max_retries: Optional[int] = None

    model_config = SettingsConfigDict(env_prefix="RUNTIMEDEPOT_", case_sensitive=False, extra="ignore")


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    env = EnvironmentOverrides()
    merged = dict(raw)
    if env.home is not None:
        merged["base_directory"] = env.home
    if env.workers is not None:
        merged["workers"] = env.workers
    if env.log_level is not None:
        merged["logging"] = {**dict(merged.get("logging") or {}), "level": env.log_level}
    http = dict(merged.get("http") or {})
    if env.timeout_sec is not None:
        http["timeout_sec"] = env.timeout_sec
    if env.max_retries is not None:
        http["max_retries"] = env.max_retries
    if http:
        merged["http"] = http
    overridden = sorted(key for key, value in env.model_dump().items() if value is not None)
    if overridden:
        LOGGER.debug("environment overrides applied", extra={"stage": "config", "keys": overridden})
    return merged


# ============================================================================
# Loading & defaults (LOD)
# ============================================================================


def build_settings(raw: Mapping[str, Any]) -> RuntimeDepotSettings:
    """Validate ``raw`` (after environment overrides) into settings."""

    try:
        return RuntimeDepotSettings.model_validate(_apply_env_overrides(dict(raw)))
    except ValidationError as exc:
        messages = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise ConfigError("Configuration validation failed:\n- " + "\n- ".join(messages)) from exc


def load_raw_yaml(config_path: Path) -> Mapping[str, Any]:
    """Read a YAML configuration file and return its top-level mapping."""

    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file '{path}' contains invalid YAML") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration file must contain a mapping at the root")
    return data


def load_settings(config_path: Path) -> RuntimeDepotSettings:
    """Load, validate, and resolve settings from a YAML file."""

    return build_settings(load_raw_yaml(config_path))


_DEFAULT_SETTINGS_LOCK = threading.Lock()
_DEFAULT_SETTINGS_CACHE: Optional[RuntimeDepotSettings] = None


def get_default_settings(*, copy: bool = False) -> RuntimeDepotSettings:
    """Return defaults with environment overrides applied, cached per process."""

    global _DEFAULT_SETTINGS_CACHE

    with _DEFAULT_SETTINGS_LOCK:
        if _DEFAULT_SETTINGS_CACHE is None:
            _DEFAULT_SETTINGS_CACHE = build_settings({})
        cached = _DEFAULT_SETTINGS_CACHE
    if copy:
        return cached.model_copy(deep=True)
    return cached


def invalidate_default_settings_cache() -> None:
    global _DEFAULT_SETTINGS_CACHE

    with _DEFAULT_SETTINGS_LOCK:
        _DEFAULT_SETTINGS_CACHE = None
