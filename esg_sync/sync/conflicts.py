"""Decide whether an incoming external value may overwrite internal data."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .entity_store import InternalEntity


class ResolutionOutcome(str, Enum):
    """Per-record reconciliation outcome."""

    IMPORT = "import"
    UNCHANGED = "unchanged"
    UPDATE = "update"
    CONFLICT_PRESERVED = "conflict_preserved"
    CONFLICT_OVERRIDDEN = "conflict_overridden"


@dataclass(frozen=True, slots=True)
class Resolution:
    """Decision for one incoming record and the sync record fields it implies."""

    outcome: ResolutionOutcome
    approved_override_by: str | None = None

    @property
    def writes(self) -> bool:
        """Whether the incoming values are written to the internal entity."""

        return self.outcome in (
            ResolutionOutcome.IMPORT,
            ResolutionOutcome.UPDATE,
            ResolutionOutcome.CONFLICT_OVERRIDDEN,
        )

    @property
    def conflict_detected(self) -> bool:
        return self.outcome in (
            ResolutionOutcome.CONFLICT_PRESERVED,
            ResolutionOutcome.CONFLICT_OVERRIDDEN,
        )

    @property
    def conflict_resolution(self) -> str | None:
        if self.outcome is ResolutionOutcome.CONFLICT_PRESERVED:
            return "preserved"
        if self.outcome is ResolutionOutcome.CONFLICT_OVERRIDDEN:
            return "overridden"
        return None

    @property
    def overwrote_approved_data(self) -> bool:
        return self.outcome is ResolutionOutcome.CONFLICT_OVERRIDDEN

    @property
    def record_status(self) -> str:
        """Status stored on the sync record."""

        return {
            ResolutionOutcome.IMPORT: "imported",
            ResolutionOutcome.UNCHANGED: "unchanged",
            ResolutionOutcome.UPDATE: "updated",
            ResolutionOutcome.CONFLICT_PRESERVED: "conflict",
            ResolutionOutcome.CONFLICT_OVERRIDDEN: "conflict",
        }[self.outcome]


class ConflictResolver:
    """
    Entity-level conflict resolution.

    An entity counts as touched when a human edited it after the connector
    last synced it. Touched entities keep their manual values unless the
    run carries an authorized override approver.
    """

    def resolve(
        self,
        existing: InternalEntity | None,
        incoming: dict[str, Any],
        approved_override_by: str | None = None,
    ) -> Resolution:
        if existing is None:
            return Resolution(ResolutionOutcome.IMPORT)
        if existing.values == incoming:
            return Resolution(ResolutionOutcome.UNCHANGED)
        if not existing.touched_since_sync():
            return Resolution(ResolutionOutcome.UPDATE)
        if approved_override_by:
            return Resolution(
                ResolutionOutcome.CONFLICT_OVERRIDDEN,
                approved_override_by=approved_override_by,
            )
        return Resolution(ResolutionOutcome.CONFLICT_PRESERVED)
