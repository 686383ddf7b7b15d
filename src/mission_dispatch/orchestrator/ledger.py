"""Attempt ledger: durable, append-mostly record of task dispatch attempts.

Every function runs inside the caller's transaction (a SQLModel ``Session``
opened by ``OrchestratorRepository.transaction``). Uniqueness of attempt
numbers and single closing of an attempt are enforced with conditional
writes, so racing callers observe a conflict instead of corrupting the
sequence.
"""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from mission_dispatch.orchestrator.errors import AttemptConflictError
from mission_dispatch.orchestrator.models import AttemptOutcome, AttemptView, CloseResult
from mission_dispatch.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from mission_dispatch.storage.sqlmodel_models import TaskAttempt

ROLLING_WINDOW = 20


def open_attempt(  # noqa: PLR0913
    session: Session,
    *,
    task_id: str,
    agent_id: str,
    attempt_number: int,
    is_retry: bool,
    score: float | None,
    dispatched_at: datetime | None = None,
) -> AttemptView:
    """Insert the attempt row unless ``(task_id, attempt_number)`` already exists."""

    attempt_id = str(uuid4())
    result = session.exec(
        sqlite_insert(TaskAttempt.__table__)  # type: ignore[arg-type]
        .values(
            attempt_id=attempt_id,
            task_id=task_id,
            attempt_number=attempt_number,
            agent_id=agent_id,
            auto_retry=is_retry,
            selection_score=score,
            dispatched_at=to_db_datetime(dispatched_at or utc_now()),
        )
        .on_conflict_do_nothing(index_elements=["task_id", "attempt_number"]),
    )
    if result.rowcount != 1:
        raise AttemptConflictError(task_id=task_id, attempt_number=attempt_number)
    attempt = get_attempt(session, attempt_id=attempt_id)
    if attempt is None:
        raise RuntimeError(f"Inserted attempt row not found: {attempt_id}")
    return attempt


def close_attempt(
    session: Session,
    *,
    attempt_id: str,
    outcome: AttemptOutcome,
    error: str | None,
    completed_at: datetime | None = None,
) -> CloseResult:
    """Close an open attempt; a second close is a no-op reported as ALREADY_CLOSED."""

    result = session.exec(
        sa_update(TaskAttempt)
        .where(
            col(TaskAttempt.attempt_id) == attempt_id,
            col(TaskAttempt.completed_at).is_(None),
        )
        .values(
            completed_at=to_db_datetime(completed_at or utc_now()),
            outcome=outcome.value,
            error=error,
        )
        .execution_options(synchronize_session=False),
    )
    if result.rowcount != 1:
        return CloseResult.ALREADY_CLOSED
    return CloseResult.CLOSED


def get_attempt(session: Session, *, attempt_id: str) -> AttemptView | None:
    row = session.exec(
        select(TaskAttempt)
        .where(TaskAttempt.attempt_id == attempt_id)
        .execution_options(populate_existing=True),
    ).one_or_none()
    return _to_attempt_view(row) if row is not None else None


def find_open_attempt(session: Session, *, task_id: str, agent_id: str) -> AttemptView | None:
    row = session.exec(
        select(TaskAttempt)
        .where(
            TaskAttempt.task_id == task_id,
            TaskAttempt.agent_id == agent_id,
            col(TaskAttempt.completed_at).is_(None),
        )
        .order_by(col(TaskAttempt.attempt_number).desc())
        .limit(1)
        .execution_options(populate_existing=True),
    ).one_or_none()
    return _to_attempt_view(row) if row is not None else None


def find_latest_closed_attempt(
    session: Session,
    *,
    task_id: str,
    agent_id: str,
) -> AttemptView | None:
    """Most recently closed attempt of this agent on this task."""

    row = session.exec(
        select(TaskAttempt)
        .where(
            TaskAttempt.task_id == task_id,
            TaskAttempt.agent_id == agent_id,
            col(TaskAttempt.completed_at).is_not(None),
        )
        .order_by(col(TaskAttempt.completed_at).desc())
        .limit(1)
        .execution_options(populate_existing=True),
    ).one_or_none()
    return _to_attempt_view(row) if row is not None else None


def count_attempts(session: Session, *, task_id: str) -> int:
    count = session.exec(
        select(func.count()).select_from(TaskAttempt).where(TaskAttempt.task_id == task_id),
    ).one()
    return int(count or 0)


def used_agent_ids(session: Session, *, task_id: str) -> set[str]:
    """Agents that already received an attempt of this task."""

    rows = session.exec(
        select(TaskAttempt.agent_id).where(TaskAttempt.task_id == task_id).distinct(),
    ).all()
    return set(rows)


def list_attempts(session: Session, *, task_id: str) -> list[AttemptView]:
    rows = session.exec(
        select(TaskAttempt)
        .where(TaskAttempt.task_id == task_id)
        .order_by(col(TaskAttempt.attempt_number).asc())
        .execution_options(populate_existing=True),
    ).all()
    return [_to_attempt_view(row) for row in rows]


def recent_outcomes(
    session: Session,
    *,
    agent_id: str,
    limit: int = ROLLING_WINDOW,
) -> list[AttemptOutcome]:
    """Outcomes of the agent's most recently closed attempts, newest first."""

    rows = session.exec(
        select(TaskAttempt.outcome)
        .where(
            TaskAttempt.agent_id == agent_id,
            col(TaskAttempt.completed_at).is_not(None),
        )
        .order_by(
            col(TaskAttempt.completed_at).desc(),
            col(TaskAttempt.dispatched_at).desc(),
        )
        .limit(limit),
    ).all()
    return [AttemptOutcome(outcome) for outcome in rows if outcome is not None]


def _to_attempt_view(row: TaskAttempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.attempt_id,
        task_id=row.task_id,
        attempt_number=row.attempt_number,
        agent_id=row.agent_id,
        auto_retry=bool(row.auto_retry),
        selection_score=row.selection_score,
        dispatched_at=to_utc_aware_datetime(row.dispatched_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        outcome=AttemptOutcome(row.outcome) if row.outcome is not None else None,
        error=row.error,
    )
