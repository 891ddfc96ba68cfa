"""Settings for the sync pipeline and helpers for YAML connector definitions.

Runtime settings come from ``ESG_SYNC_*`` environment variables (or ``.env``
files); nested sections use ``__``, e.g. ``ESG_SYNC_SYNC__RECORD_WORKERS=8``.
List values are given as JSON (``ESG_SYNC_API_KEYS='["k1", "k2"]'``) or as a
comma-separated string.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def load_yaml_config(config_path: str | Path) -> dict[str, Any]:
    """
    Read a YAML document whose top level is a mapping.

    An empty file yields an empty dict.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or its
            top level is not a mapping.
    """
    path = Path(config_path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigurationError(
            f"Top level of {path} must be a mapping, got {type(document).__name__}"
        )
    logger.debug("Loaded configuration from %s", path)
    return document


def validate_config(config: dict[str, Any], model: type[ModelT]) -> ModelT:
    """Validate ``config`` into ``model``, re-raising pydantic errors as ConfigurationError."""

    try:
        return model.model_validate(config)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Configuration validation failed: {exc}") from exc


def _as_string_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list | tuple | set):
        items = [str(item) for item in value]
    else:
        raise ValueError(f"{field_name} must be a comma-separated string or list of strings")
    return [item.strip() for item in items if item.strip()]


class AWSSettings(BaseModel):
    """Session options for the Secrets Manager credential resolver."""

    model_config = ConfigDict(extra="forbid")

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None


class DatabasePoolSettings(BaseModel):
    """Connection pooling configuration for the SQLAlchemy engine."""

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle_seconds: int = Field(default=1800, ge=0)
    pre_ping: bool = True


class SyncSettings(BaseModel):
    """Runtime knobs for the synchronization pipeline."""

    model_config = ConfigDict(extra="forbid")

    record_workers: int = Field(default=4, ge=1)
    http_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    credential_cache_ttl_seconds: float = Field(default=300.0, gt=0)
    credential_cache_size: int = Field(default=128, ge=1)
    history_default_limit: int = Field(default=100, ge=1)
    statistics_window_days: int = Field(default=30, ge=1)
    # Empty means any named approver may authorize an override.
    override_approvers: list[str] = Field(default_factory=list)

    @field_validator("override_approvers", mode="before")
    @classmethod
    def _parse_approvers(cls, value: Any) -> list[str]:
        return _as_string_list(value, "override_approvers")


class GlobalSettings(BaseSettings):
    """Process-wide settings sourced from ``ESG_SYNC_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ESG_SYNC_",
        env_nested_delimiter="__",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"
    database_url: str | None = None
    database: DatabasePoolSettings = DatabasePoolSettings()
    sync: SyncSettings = SyncSettings()
    aws: AWSSettings = AWSSettings()
    api_keys: list[str] = Field(default_factory=list)
    required_env: list[str] = Field(default_factory=lambda: ["ESG_SYNC_DATABASE_URL"])

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.lower()

    @field_validator("api_keys", mode="before")
    @classmethod
    def _parse_api_keys(cls, value: Any) -> list[str]:
        return _as_string_list(value, "api_keys")


def ensure_runtime_configuration(settings: GlobalSettings | None = None) -> GlobalSettings:
    """Fail fast when an environment variable listed in ``required_env`` is unset.

    Called on API startup and by Alembic before touching the database.
    """

    settings = settings or get_settings()

    missing = sorted({name for name in settings.required_env if not os.environ.get(name)})
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}. "
            "Set them in the environment or a .env file."
        )
    if not settings.api_keys:
        logger.warning("No API keys configured; the HTTP API will reject every request")
    return settings


@lru_cache(maxsize=1)
def _get_settings_cached() -> GlobalSettings:
    return GlobalSettings()


def get_settings(*, reload: bool = False) -> GlobalSettings:
    """Return cached settings, optionally forcing a reload."""

    if reload:
        _get_settings_cached.cache_clear()
    return _get_settings_cached()
