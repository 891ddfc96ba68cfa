"""SQLAlchemy model for connector configuration."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Connector(Base):
    """Configured link to one external HR or Finance system."""

    __tablename__ = "connectors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    connector_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="disabled")
    endpoint_base_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    auth_type: Mapped[str] = mapped_column(String(32), nullable=False)
    auth_secret_ref: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    capabilities: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    use_exponential_backoff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    mapping_config: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def is_enabled(self) -> bool:
        return self.status == "enabled"

    def __repr__(self) -> str:
        """Return a developer-friendly string representation."""

        return (
            f"<Connector id={self.id} name={self.name} "
            f"type={self.connector_type} status={self.status}>"
        )
