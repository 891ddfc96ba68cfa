"""Versioned field-mapping schemas, one closed schema per connector type."""

from __future__ import annotations

import json
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

HR_TRANSFORMS = ("direct", "fte", "sum", "average", "lookup")
FINANCE_TRANSFORMS = ("direct", "sum", "average", "lookup")


class FieldMapping(BaseModel):
    """Map one external field onto one internal field."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    external_field: str = Field(..., min_length=1, alias="externalField")
    internal_field: str = Field(..., min_length=1, alias="internalField")
    transform: str = "direct"
    transform_params: dict[str, Any] = Field(default_factory=dict, alias="transformParams")
    required: bool = False

    @field_validator("transform", mode="before")
    @classmethod
    def _normalize_transform(cls, value: Any) -> str:
        if value is None:
            return "direct"
        return str(value).strip().lower()

    @model_validator(mode="after")
    def _check_params(self) -> FieldMapping:
        if self.transform == "lookup":
            table = self.transform_params.get("table")
            if isinstance(table, str):
                try:
                    table = json.loads(table)
                except ValueError as exc:
                    raise ValueError("lookup transform 'table' must be a JSON object") from exc
            if not isinstance(table, dict) or not table:
                raise ValueError("lookup transform requires a non-empty 'table' mapping")
            self.transform_params["table"] = {str(k): v for k, v in table.items()}
        if self.transform == "fte":
            hours = self.transform_params.get("standardHours", 40.0)
            try:
                standard_hours = float(hours)
            except (TypeError, ValueError) as exc:
                raise ValueError("fte transform 'standardHours' must be numeric") from exc
            if standard_hours <= 0:
                raise ValueError("fte transform 'standardHours' must be greater than zero")
            self.transform_params["standardHours"] = standard_hours
        return self


class _MappingConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    version: Literal[1] = 1
    entity_type: str | None = Field(default=None, alias="entityType")
    mappings: list[FieldMapping] = Field(default_factory=list)

    allowed_transforms: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _check_transforms(self) -> _MappingConfigBase:
        if not self.mappings:
            raise ValueError("mapping configuration requires at least one field mapping")
        internal_fields: set[str] = set()
        for mapping in self.mappings:
            if mapping.transform not in self.allowed_transforms:
                raise ValueError(
                    f"Transform '{mapping.transform}' is not supported for "
                    f"{self.connector_type} connectors (allowed: {', '.join(self.allowed_transforms)})"
                )
            if mapping.internal_field in internal_fields:
                raise ValueError(f"Internal field '{mapping.internal_field}' is mapped twice")
            internal_fields.add(mapping.internal_field)
        return self

    def to_storage(self) -> dict[str, Any]:
        """Return the JSON-serializable form persisted on the connector."""

        return self.model_dump(mode="json")


class HRMappingConfig(_MappingConfigBase):
    """Mapping schema for HR connectors (employees, departments, org units)."""

    connector_type: Literal["hr"] = "hr"
    allowed_transforms: ClassVar[tuple[str, ...]] = HR_TRANSFORMS


class FinanceMappingConfig(_MappingConfigBase):
    """Mapping schema for Finance connectors (spend, revenue, capex, opex, suppliers)."""

    connector_type: Literal["finance"] = "finance"
    allowed_transforms: ClassVar[tuple[str, ...]] = FINANCE_TRANSFORMS


MappingConfig = Annotated[
    HRMappingConfig | FinanceMappingConfig,
    Field(discriminator="connector_type"),
]

_MAPPING_ADAPTER: TypeAdapter[HRMappingConfig | FinanceMappingConfig] = TypeAdapter(MappingConfig)


def parse_mapping_config(
    connector_type: str,
    raw: dict[str, Any] | str | None,
) -> HRMappingConfig | FinanceMappingConfig:
    """Validate a raw mapping configuration against the schema for ``connector_type``.

    Raises:
        pydantic.ValidationError: If the configuration does not match the schema.
        ValueError: If ``raw`` is not a mapping or JSON object.
    """

    if raw is None or raw == "":
        raw = {}
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("mapping configuration must be a JSON object")

    declared = raw.get("connector_type")
    if declared is not None and declared != connector_type:
        raise ValueError(
            f"mapping configuration is for '{declared}' connectors, not '{connector_type}'"
        )
    payload = dict(raw)
    payload["connector_type"] = connector_type
    return _MAPPING_ADAPTER.validate_python(payload)
