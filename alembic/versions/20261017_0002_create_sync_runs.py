"""Create the sync_runs table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None

_COUNTERS = (
    "total_records",
    "imported_count",
    "updated_count",
    "unchanged_count",
    "conflicts_preserved_count",
    "conflicts_overridden_count",
    "rejected_count",
    "failed_count",
    "skipped_count",
    "duration_ms",
)


def upgrade() -> None:
    alembic_op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.Integer(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
        sa.Column("is_scheduled", sa.Boolean(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        *(sa.Column(name, sa.Integer(), nullable=False) for name in _COUNTERS),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("correlation_id", name="uq_sync_runs_correlation_id"),
    )
    alembic_op.create_index("ix_sync_runs_connector_id", "sync_runs", ["connector_id"])
    alembic_op.create_index("ix_sync_runs_state", "sync_runs", ["state"])
    alembic_op.create_index("ix_sync_runs_started_at", "sync_runs", ["started_at"])


def downgrade() -> None:
    alembic_op.drop_index("ix_sync_runs_started_at", table_name="sync_runs")
    alembic_op.drop_index("ix_sync_runs_state", table_name="sync_runs")
    alembic_op.drop_index("ix_sync_runs_connector_id", table_name="sync_runs")
    alembic_op.drop_table("sync_runs")
