"""Create connector, sync record, integration log and synced entity tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the sync pipeline tables and supporting indexes."""

    alembic_op.create_table(
        "connectors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("connector_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("endpoint_base_url", sa.String(length=1024), nullable=False),
        sa.Column("auth_type", sa.String(length=32), nullable=False),
        sa.Column("auth_secret_ref", sa.String(length=512), nullable=False),
        sa.Column("capabilities", sa.JSON(), nullable=False),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=False),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False),
        sa.Column("retry_delay_seconds", sa.Float(), nullable=False),
        sa.Column("use_exponential_backoff", sa.Boolean(), nullable=False),
        sa.Column("mapping_config", sa.JSON(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
    )
    alembic_op.create_index("ix_connectors_connector_type", "connectors", ["connector_type"])

    alembic_op.create_table(
        "sync_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.Integer(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("raw_payload", sa.Text(), nullable=True),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("conflict_detected", sa.Boolean(), nullable=False),
        sa.Column("conflict_resolution", sa.String(length=16), nullable=True),
        sa.Column("overwrote_approved_data", sa.Boolean(), nullable=False),
        sa.Column("approved_override_by", sa.String(length=255), nullable=True),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
        sa.Column(
            "synced_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    alembic_op.create_index("ix_sync_records_connector_id", "sync_records", ["connector_id"])
    alembic_op.create_index("ix_sync_records_correlation_id", "sync_records", ["correlation_id"])
    alembic_op.create_index("ix_sync_records_external_id", "sync_records", ["external_id"])
    alembic_op.create_index("ix_sync_records_status", "sync_records", ["status"])
    alembic_op.create_index("ix_sync_records_synced_at", "sync_records", ["synced_at"])

    alembic_op.create_table(
        "integration_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.Integer(), nullable=False),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("http_method", sa.String(length=16), nullable=True),
        sa.Column("endpoint", sa.String(length=1024), nullable=True),
        sa.Column("http_status_code", sa.Integer(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
    )
    alembic_op.create_index(
        "ix_integration_logs_connector_id", "integration_logs", ["connector_id"]
    )
    alembic_op.create_index(
        "ix_integration_logs_correlation_id", "integration_logs", ["correlation_id"]
    )
    alembic_op.create_index("ix_integration_logs_started_at", "integration_logs", ["started_at"])

    alembic_op.create_table(
        "synced_entities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("connector_id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("values", sa.JSON(), nullable=False),
        sa.Column("raw_payload", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_values", sa.JSON(), nullable=True),
        sa.Column("manually_edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("manually_edited_by", sa.String(length=255), nullable=True),
        sa.UniqueConstraint(
            "connector_id", "external_id", name="uq_synced_entities_external"
        ),
    )
    alembic_op.create_index(
        "ix_synced_entities_connector_id", "synced_entities", ["connector_id"]
    )


def downgrade() -> None:
    """Drop the sync pipeline tables and related indexes."""

    alembic_op.drop_index("ix_synced_entities_connector_id", table_name="synced_entities")
    alembic_op.drop_table("synced_entities")
    alembic_op.drop_index("ix_integration_logs_started_at", table_name="integration_logs")
    alembic_op.drop_index("ix_integration_logs_correlation_id", table_name="integration_logs")
    alembic_op.drop_index("ix_integration_logs_connector_id", table_name="integration_logs")
    alembic_op.drop_table("integration_logs")
    alembic_op.drop_index("ix_sync_records_synced_at", table_name="sync_records")
    alembic_op.drop_index("ix_sync_records_status", table_name="sync_records")
    alembic_op.drop_index("ix_sync_records_external_id", table_name="sync_records")
    alembic_op.drop_index("ix_sync_records_correlation_id", table_name="sync_records")
    alembic_op.drop_index("ix_sync_records_connector_id", table_name="sync_records")
    alembic_op.drop_table("sync_records")
    alembic_op.drop_index("ix_connectors_connector_type", table_name="connectors")
    alembic_op.drop_table("connectors")
