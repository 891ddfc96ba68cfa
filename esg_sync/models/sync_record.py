"""SQLAlchemy model for per-record sync outcomes."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SyncRecord(Base):
    """Outcome of one external record processed during a sync run."""

    __tablename__ = "sync_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[int] = mapped_column(
        ForeignKey("connectors.id"), nullable=False, index=True
    )
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    conflict_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conflict_resolution: Mapped[str | None] = mapped_column(String(16), nullable=True)
    overwrote_approved_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_override_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        """Return a developer-friendly string representation."""

        return (
            f"<SyncRecord id={self.id} connector={self.connector_id} "
            f"external_id={self.external_id} status={self.status}>"
        )
