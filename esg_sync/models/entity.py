"""SQLAlchemy model for internal entities paired with external records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SyncedEntity(Base):
    """Internal staging row holding the values imported for one external record."""

    __tablename__ = "synced_entities"
    __table_args__ = (
        UniqueConstraint("connector_id", "external_id", name="uq_synced_entities_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    values: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_synced_values: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    manually_edited_at: Mapped[datetime | None] = mapped_column(nullable=True)
    manually_edited_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        """Return a developer-friendly string representation."""

        return (
            f"<SyncedEntity id={self.id} connector={self.connector_id} "
            f"external_id={self.external_id}>"
        )
