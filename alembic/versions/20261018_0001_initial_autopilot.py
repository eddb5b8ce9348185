"""Create autopilot provenance, queue and trace tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "spans",
        sa.Column("span_id", sa.String(), nullable=False),
        sa.Column("step", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("span_id"),
    )
    op.create_index("ix_spans_step", "spans", ["step"])
    op.create_index("ix_spans_parent_id", "spans", ["parent_id"])

    op.create_table(
        "span_outcomes",
        sa.Column("span_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["span_id"], ["spans.span_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("span_id"),
    )
    op.create_index("ix_span_outcomes_status", "span_outcomes", ["status"])

    op.create_table(
        "actions",
        sa.Column("action_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("span_id", sa.String(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("action_id"),
    )
    op.create_index("ix_actions_action_type", "actions", ["action_type"])
    op.create_index("ix_actions_span_id", "actions", ["span_id"])

    op.create_table(
        "pending_actions",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("action_id", sa.String(), nullable=False),
        sa.Column("trace_id", sa.String(), nullable=False),
        sa.Column("span_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["action_id"], ["actions.action_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("action_id"),
    )
    op.create_index("ix_pending_actions_trace_id", "pending_actions", ["trace_id"])
    op.create_index("idx_pending_actions_type_seq", "pending_actions", ["action_type", "seq"])

    op.create_table(
        "task_mappings",
        sa.Column("action_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("branch_name", sa.String(), nullable=False),
        sa.Column("trace_id", sa.String(), nullable=True),
        sa.Column("workflow_span_id", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("action_id"),
    )
    op.create_index("ix_task_mappings_task_id", "task_mappings", ["task_id"])
    op.create_index("ix_task_mappings_trace_id", "task_mappings", ["trace_id"])

    op.create_table(
        "processed_events",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("event_id"),
    )

    op.create_table(
        "action_traces",
        sa.Column("trace_id", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("steps_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("trace_id"),
    )


def downgrade() -> None:
    op.drop_table("action_traces")
    op.drop_table("processed_events")
    op.drop_index("ix_task_mappings_trace_id", table_name="task_mappings")
    op.drop_index("ix_task_mappings_task_id", table_name="task_mappings")
    op.drop_table("task_mappings")
    op.drop_index("idx_pending_actions_type_seq", table_name="pending_actions")
    op.drop_index("ix_pending_actions_trace_id", table_name="pending_actions")
    op.drop_table("pending_actions")
    op.drop_index("ix_actions_span_id", table_name="actions")
    op.drop_index("ix_actions_action_type", table_name="actions")
    op.drop_table("actions")
    op.drop_index("ix_span_outcomes_status", table_name="span_outcomes")
    op.drop_table("span_outcomes")
    op.drop_index("ix_spans_parent_id", table_name="spans")
    op.drop_index("ix_spans_step", table_name="spans")
    op.drop_table("spans")
