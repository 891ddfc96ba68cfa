"""Pydantic schemas describing connector configuration and lifecycle."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ConfigurationError
from .mapping import FinanceMappingConfig, HRMappingConfig, parse_mapping_config


class ConnectorType(str, Enum):
    """Source domains supported by the sync pipeline."""

    HR = "hr"
    FINANCE = "finance"


class ConnectorStatus(str, Enum):
    """Lifecycle status of a connector."""

    ENABLED = "enabled"
    DISABLED = "disabled"


class AuthType(str, Enum):
    """Authentication schemes understood by the source clients."""

    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"
    OAUTH2 = "oauth2"


CAPABILITIES = frozenset({"pull", "push", "webhook"})


class RetryPolicy(BaseModel):
    """Bounded retry configuration applied to every outbound call of a connector."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=0, description="Retries after the first call")
    base_delay_seconds: float = Field(default=5.0, gt=0)
    use_exponential_backoff: bool = True

    def delay_before_attempt(self, attempt_number: int) -> float:
        """Return the delay preceding attempt ``attempt_number`` (1-based, >= 2)."""

        if attempt_number < 2:
            return 0.0
        if not self.use_exponential_backoff:
            return self.base_delay_seconds
        return self.base_delay_seconds * (2 ** (attempt_number - 2))


def _normalize_capabilities(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list | tuple | set | frozenset):
        raise ValueError("capabilities must be a list or comma-separated string")
    normalized: list[str] = []
    for item in value:
        capability = str(item).strip().lower()
        if not capability:
            continue
        if capability not in CAPABILITIES:
            raise ValueError(
                f"Unknown capability '{capability}' (allowed: {', '.join(sorted(CAPABILITIES))})"
            )
        if capability not in normalized:
            normalized.append(capability)
    return normalized


def _validate_endpoint(value: str) -> str:
    try:
        url = httpx.URL(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid endpoint URL: {exc}") from exc
    if url.scheme not in {"http", "https"} or not url.host:
        raise ValueError("endpoint_base_url must be an absolute HTTP(S) URL")
    return str(url).rstrip("/")


class ConnectorCreate(BaseModel):
    """Validated input for registering a new connector."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    connector_type: ConnectorType
    endpoint_base_url: str
    auth_type: AuthType = AuthType.BEARER
    auth_secret_ref: str = Field(default="", max_length=512)
    capabilities: list[str] = Field(default_factory=lambda: ["pull"])
    rate_limit_per_minute: int = Field(default=60, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    mapping_config: dict[str, Any] = Field(..., description="Field mappings for the connector type")
    description: str | None = None
    enabled: bool = False

    @field_validator("capabilities", mode="before")
    @classmethod
    def _normalize_caps(cls, value: Any) -> list[str]:
        return _normalize_capabilities(value)

    @field_validator("endpoint_base_url")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        return _validate_endpoint(value)

    @model_validator(mode="after")
    def _check_mapping_and_auth(self) -> ConnectorCreate:
        self.mapping_config = parse_mapping_config(
            self.connector_type.value, self.mapping_config
        ).to_storage()
        if self.auth_type is not AuthType.NONE and not self.auth_secret_ref.strip():
            raise ValueError(f"auth_type '{self.auth_type.value}' requires an auth_secret_ref")
        return self


class ConnectorUpdate(BaseModel):
    """Partial update of a connector; ``connector_type`` may be sent but never changed."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    connector_type: ConnectorType | None = None
    endpoint_base_url: str | None = None
    auth_type: AuthType | None = None
    auth_secret_ref: str | None = Field(default=None, max_length=512)
    capabilities: list[str] | None = None
    rate_limit_per_minute: int | None = Field(default=None, gt=0)
    retry_policy: RetryPolicy | None = None
    mapping_config: dict[str, Any] | None = None
    description: str | None = None

    @field_validator("capabilities", mode="before")
    @classmethod
    def _normalize_caps(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return _normalize_capabilities(value)

    @field_validator("endpoint_base_url")
    @classmethod
    def _check_endpoint(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _validate_endpoint(value)


class ConnectorView(BaseModel):
    """Read model returned to API and CLI callers (never carries secrets)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    connector_type: ConnectorType
    status: ConnectorStatus
    endpoint_base_url: str
    auth_type: AuthType
    auth_secret_ref: str
    capabilities: list[str]
    rate_limit_per_minute: int
    max_retry_attempts: int
    retry_delay_seconds: float
    use_exponential_backoff: bool
    mapping_config: dict[str, Any]
    description: str | None = None
    created_at: datetime
    created_by: str
    updated_at: datetime | None = None
    updated_by: str | None = None

    @property
    def is_enabled(self) -> bool:
        return self.status is ConnectorStatus.ENABLED

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retry_attempts,
            base_delay_seconds=self.retry_delay_seconds,
            use_exponential_backoff=self.use_exponential_backoff,
        )


def mapping_for(connector_type: str, raw: dict[str, Any]) -> HRMappingConfig | FinanceMappingConfig:
    """Parse the stored mapping configuration of a connector.

    Raises:
        ConfigurationError: If the stored configuration no longer validates
    """

    try:
        return parse_mapping_config(connector_type, raw)
    except (PydanticValidationError, ValueError) as exc:
        raise ConfigurationError(f"Stored mapping configuration is invalid: {exc}") from exc
