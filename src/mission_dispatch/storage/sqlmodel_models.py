"""SQLModel ORM tables for the dispatch store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    status: str = Field(default="standby", index=True)
    runtime_name: str = "main"
    soul_md: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    user_md: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    agents_md: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_agent_status_updated", "assigned_agent_id", "status", "updated_at"),
    )

    task_id: str = Field(primary_key=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    priority: str = "normal"
    status: str = Field(default="inbox", index=True)
    assigned_agent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    due_date: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskAttempt(SQLModel, table=True):
    __tablename__ = "task_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "attempt_number",
            name="uq_task_attempts_task_attempt_number",
        ),
        Index("idx_task_attempts_agent_completed", "agent_id", "completed_at"),
    )

    attempt_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_number: int
    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    auto_retry: bool = False
    selection_score: float | None = None
    dispatched_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    outcome: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class AgentStats(SQLModel, table=True):
    __tablename__ = "agent_stats"  # type: ignore[bad-override]

    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    total_success: int = 0
    total_failure: int = 0
    is_degraded: bool = False
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskOutcome(SQLModel, table=True):
    __tablename__ = "task_outcomes"  # type: ignore[bad-override]

    outcome_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    final_status: str
    attempts: int
    last_agent_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeliverySession(SQLModel, table=True):
    __tablename__ = "delivery_sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_delivery_sessions_agent_active",
            "agent_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
        ),
    )

    session_id: str = Field(primary_key=True)
    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    session_key: str = Field(index=True)
    channel: str = "mission-control"
    status: str = "active"
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Event(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    agent_id: str | None = None
    task_id: str | None = None
    message: str
    details_json: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
