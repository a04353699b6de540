"""create autopilot tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "autopilot_webhook_event",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_hash", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_hash"),
    )
    op.create_index("ix_autopilot_webhook_event_status", "autopilot_webhook_event", ["status"], unique=False)

    op.create_table(
        "autopilot_idempotency_key",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scope", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="started"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scope", "key", name="uq_autopilot_idempotency_scope_key"),
    )

    op.create_table(
        "autopilot_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("before_json", sa.Text(), nullable=True),
        sa.Column("after_json", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_autopilot_audit_log_entity", "autopilot_audit_log", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_autopilot_audit_log_action", "autopilot_audit_log", ["action"], unique=False)

    op.create_table(
        "autopilot_merge_candidate",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("status_reason", sa.String(length=64), nullable=True),
        sa.Column("approved_for_execution", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("plan_json", sa.Text(), nullable=True),
        sa.Column("review_item_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_autopilot_merge_candidate_status", "autopilot_merge_candidate", ["status"], unique=False)
    op.create_index(
        "ix_autopilot_merge_candidate_pair",
        "autopilot_merge_candidate",
        ["entity_type", "source_id", "target_id"],
        unique=False,
    )

    op.create_table(
        "autopilot_job_run",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("stats_json", sa.Text(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_autopilot_job_run_job_name", "autopilot_job_run", ["job_name", "started_at"], unique=False)

    op.create_table(
        "autopilot_deal_snapshot",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("stage_id", sa.Integer(), nullable=False),
        sa.Column("pipeline_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=True),
        sa.Column("value", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_autopilot_deal_snapshot_deal",
        "autopilot_deal_snapshot",
        ["deal_id", "captured_at"],
        unique=False,
    )

    op.create_table(
        "autopilot_review_queue_item",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_autopilot_review_queue_item_status",
        "autopilot_review_queue_item",
        ["status"],
        unique=False,
    )

    op.create_table(
        "autopilot_field_map",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("field_key", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("field_type", sa.String(length=64), nullable=True),
        sa.Column("options_json", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "field_key", name="uq_autopilot_field_map_entity_key"),
    )

    op.create_table(
        "autopilot_automation_job",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("dedup_key", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("params_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index("ix_autopilot_automation_job_status", "autopilot_automation_job", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_autopilot_automation_job_status", table_name="autopilot_automation_job")
    op.drop_table("autopilot_automation_job")
    op.drop_table("autopilot_field_map")
    op.drop_index("ix_autopilot_review_queue_item_status", table_name="autopilot_review_queue_item")
    op.drop_table("autopilot_review_queue_item")
    op.drop_index("ix_autopilot_deal_snapshot_deal", table_name="autopilot_deal_snapshot")
    op.drop_table("autopilot_deal_snapshot")
    op.drop_index("ix_autopilot_job_run_job_name", table_name="autopilot_job_run")
    op.drop_table("autopilot_job_run")
    op.drop_index("ix_autopilot_merge_candidate_pair", table_name="autopilot_merge_candidate")
    op.drop_index("ix_autopilot_merge_candidate_status", table_name="autopilot_merge_candidate")
    op.drop_table("autopilot_merge_candidate")
    op.drop_index("ix_autopilot_audit_log_action", table_name="autopilot_audit_log")
    op.drop_index("ix_autopilot_audit_log_entity", table_name="autopilot_audit_log")
    op.drop_table("autopilot_audit_log")
    op.drop_table("autopilot_idempotency_key")
    op.drop_index("ix_autopilot_webhook_event_status", table_name="autopilot_webhook_event")
    op.drop_table("autopilot_webhook_event")
