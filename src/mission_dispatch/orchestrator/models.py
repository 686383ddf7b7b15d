"""Domain models for dispatch, attempts, and agent health."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MAX_ATTEMPTS = 2


class TaskStatus(str, Enum):
    """Task board columns driven by the orchestration core or the operator."""

    INBOX = "inbox"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    TESTING = "testing"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AgentStatus(str, Enum):
    """Agent lifecycle states."""

    STANDBY = "standby"
    WORKING = "working"
    OFFLINE = "offline"


class AttemptOutcome(str, Enum):
    """Recorded result of one closed attempt."""

    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def normalize(cls, raw: str | None) -> AttemptOutcome:
        """Anything other than ``success`` counts as a failure; missing means success."""

        if raw is None:
            return cls.SUCCESS
        return cls.SUCCESS if str(raw).strip().lower() == cls.SUCCESS.value else cls.FAILED


class EventType(str, Enum):
    """Event types appended to the notification log."""

    TASK_DISPATCHED = "task_dispatched"
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_STATUS_CHANGED = "task_status_changed"
    AGENT_STATUS_CHANGED = "agent_status_changed"


class CloseResult(str, Enum):
    CLOSED = "closed"
    ALREADY_CLOSED = "already_closed"


class FinalizeResult(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(slots=True)
class AgentCreate:
    """Input payload for registering an agent."""

    name: str
    runtime_name: str = "main"
    status: AgentStatus = AgentStatus.STANDBY
    soul_md: str | None = None
    user_md: str | None = None
    agents_md: str | None = None
    agent_id: str | None = None


@dataclass(slots=True)
class AgentView:
    agent_id: str
    name: str
    status: AgentStatus
    runtime_name: str
    soul_md: str | None
    user_md: str | None
    agents_md: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str | None = None
    priority: TaskPriority = TaskPriority.NORMAL
    assigned_agent_id: str | None = None
    due_date: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    task_id: str
    title: str
    description: str | None
    priority: TaskPriority
    status: TaskStatus
    assigned_agent_id: str | None
    due_date: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AttemptView:
    """One dispatch of a task to an agent."""

    attempt_id: str
    task_id: str
    attempt_number: int
    agent_id: str
    auto_retry: bool
    selection_score: float | None
    dispatched_at: datetime
    completed_at: datetime | None
    outcome: AttemptOutcome | None
    error: str | None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.dispatched_at).total_seconds()


@dataclass(slots=True)
class AgentHealth:
    """Cumulative counters plus the derived rolling-20 ratio for one agent."""

    agent_id: str
    total_success: int = 0
    total_failure: int = 0
    is_degraded: bool = False
    last_20_success_rate: float = 0.0

    @property
    def total_attempts(self) -> int:
        return self.total_success + self.total_failure

    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.total_success / self.total_attempts


@dataclass(slots=True)
class OutcomeView:
    """Terminal record closing a task's attempt sequence."""

    outcome_id: str
    task_id: str
    final_status: AttemptOutcome
    attempts: int
    last_agent_id: str | None
    created_at: datetime


@dataclass(slots=True)
class DeliverySessionView:
    session_id: str
    agent_id: str
    session_key: str
    channel: str
    status: str
    created_at: datetime


@dataclass(slots=True)
class EventView:
    event_id: int
    event_type: str
    agent_id: str | None
    task_id: str | None
    message: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchResult:
    """Outcome of a successful dispatch."""

    task_id: str
    agent_id: str
    attempt_number: int
    selection_score: float
    session_key: str
    reassigned: bool


@dataclass(slots=True)
class CompletionResult:
    """Response to one completion signal."""

    task_id: str
    agent_id: str
    outcome: AttemptOutcome | None
    idempotent: bool = False
    summary: str | None = None
    should_retry: bool = False
    new_status: TaskStatus | None = None
    attempts: int = 0


@dataclass(slots=True)
class RetryRequested:
    """Intent to dispatch the next attempt of a task, published after commit."""

    task_id: str
    requested_at: datetime
