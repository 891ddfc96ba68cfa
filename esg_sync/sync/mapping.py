"""Apply a connector's mapping configuration to raw external records."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..exceptions import MappingError
from ..schemas.mapping import FieldMapping, FinanceMappingConfig, HRMappingConfig

EXTERNAL_ID_KEYS: tuple[str, ...] = ("externalId", "external_id")


@dataclass(slots=True)
class MappedRecord:
    """Candidate internal values produced from one external record."""

    external_id: str
    values: dict[str, Any]
    raw_payload: str


def serialize_payload(record: Any) -> str:
    """Serialize a raw record deterministically for storage on the sync record."""

    try:
        return json.dumps(record, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(record)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _numeric_items(value: Any, transform: str) -> list[float]:
    if not isinstance(value, list):
        raise MappingError(f"'{transform}' transform requires a list of numbers")
    return [float(item) for item in value if _is_number(item)]


def _direct(value: Any, params: dict[str, Any]) -> Any:
    return value


def _fte(value: Any, params: dict[str, Any]) -> float:
    if not _is_number(value):
        raise MappingError("'fte' transform requires a numeric hours value")
    return float(value) / float(params.get("standardHours", 40.0))


def _sum(value: Any, params: dict[str, Any]) -> float:
    return sum(_numeric_items(value, "sum"))


def _average(value: Any, params: dict[str, Any]) -> float | None:
    items = _numeric_items(value, "average")
    if not items:
        return None
    return sum(items) / len(items)


def _lookup(value: Any, params: dict[str, Any]) -> Any:
    if not isinstance(value, str):
        return None
    return params["table"].get(value)


TRANSFORMS: dict[str, Callable[[Any, dict[str, Any]], Any]] = {
    "direct": _direct,
    "fte": _fte,
    "sum": _sum,
    "average": _average,
    "lookup": _lookup,
}


class FieldMapper:
    """Map raw records of one connector into internal field values."""

    def __init__(self, config: HRMappingConfig | FinanceMappingConfig):
        self.config = config

    @property
    def entity_type(self) -> str | None:
        return self.config.entity_type

    @staticmethod
    def external_id_of(record: Any) -> str | None:
        """Return the record's external id, or None when missing or blank."""

        if not isinstance(record, dict):
            return None
        for key in EXTERNAL_ID_KEYS:
            value = record.get(key)
            if value is None or isinstance(value, bool | dict | list):
                continue
            text = str(value).strip()
            if text:
                return text
        return None

    def map_record(self, record: Any) -> MappedRecord:
        """Map ``record``; raises :class:`MappingError` when it cannot be mapped."""

        if not isinstance(record, dict):
            raise MappingError("Record is not a JSON object")
        external_id = self.external_id_of(record)
        if external_id is None:
            raise MappingError("Record has no externalId")

        values: dict[str, Any] = {}
        for mapping in self.config.mappings:
            if mapping.external_field not in record:
                if mapping.required:
                    raise MappingError(f"Required field '{mapping.external_field}' is missing")
                continue
            value = self._apply(mapping, record[mapping.external_field])
            if value is None and mapping.required:
                raise MappingError(f"Required field '{mapping.external_field}' has no value")
            values[mapping.internal_field] = value

        return MappedRecord(
            external_id=external_id,
            values=values,
            raw_payload=serialize_payload(record),
        )

    @staticmethod
    def _apply(mapping: FieldMapping, value: Any) -> Any:
        transform = TRANSFORMS[mapping.transform]
        try:
            return transform(value, mapping.transform_params)
        except MappingError as exc:
            raise MappingError(f"Field '{mapping.external_field}': {exc}") from exc
