"""SQLModel ORM tables for the autopilot store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class SpanRow(SQLModel, table=True):
    __tablename__ = "spans"  # type: ignore[bad-override]

    span_id: str = Field(primary_key=True)
    step: str = Field(index=True)
    parent_id: str | None = Field(default=None, index=True)
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SpanOutcomeRow(SQLModel, table=True):
    __tablename__ = "span_outcomes"  # type: ignore[bad-override]

    span_id: str = Field(
        sa_column=Column(
            ForeignKey("spans.span_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    status: str = Field(index=True)
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ActionRow(SQLModel, table=True):
    __tablename__ = "actions"  # type: ignore[bad-override]

    action_id: str = Field(primary_key=True)
    action_type: str = Field(index=True)
    span_id: str = Field(index=True)
    reasoning: str | None = Field(default=None, sa_column=Column(Text))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PendingActionRow(SQLModel, table=True):
    __tablename__ = "pending_actions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_pending_actions_type_seq", "action_type", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    action_id: str = Field(
        sa_column=Column(
            ForeignKey("actions.action_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    trace_id: str = Field(index=True)
    span_id: str
    action_type: str
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskMappingRow(SQLModel, table=True):
    __tablename__ = "task_mappings"  # type: ignore[bad-override]

    action_id: str = Field(primary_key=True)
    task_id: int = Field(index=True)
    branch_name: str
    trace_id: str | None = Field(default=None, index=True)
    workflow_span_id: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessedEventRow(SQLModel, table=True):
    __tablename__ = "processed_events"  # type: ignore[bad-override]

    seq: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True)
    processed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ActionTraceRow(SQLModel, table=True):
    __tablename__ = "action_traces"  # type: ignore[bad-override]

    trace_id: str = Field(primary_key=True)
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    retry_count: int = 0
    steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
