"""Write-once terminal records for tasks."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from mission_dispatch.orchestrator.models import AttemptOutcome, FinalizeResult, OutcomeView
from mission_dispatch.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from mission_dispatch.storage.sqlmodel_models import TaskOutcome


def write_outcome(
    session: Session,
    *,
    task_id: str,
    final_status: AttemptOutcome,
    attempt_count: int,
    last_agent_id: str | None,
) -> FinalizeResult:
    """Insert the outcome record unless the task already has one."""

    result = session.exec(
        sqlite_insert(TaskOutcome.__table__)  # type: ignore[arg-type]
        .values(
            outcome_id=str(uuid4()),
            task_id=task_id,
            final_status=final_status.value,
            attempts=attempt_count,
            last_agent_id=last_agent_id,
            created_at=to_db_datetime(utc_now()),
        )
        .on_conflict_do_nothing(index_elements=["task_id"]),
    )
    if result.rowcount != 1:
        return FinalizeResult.ALREADY_EXISTS
    return FinalizeResult.INSERTED


def get_outcome(session: Session, *, task_id: str) -> OutcomeView | None:
    row = session.exec(select(TaskOutcome).where(TaskOutcome.task_id == task_id)).one_or_none()
    if row is None:
        return None
    return to_outcome_view(row)


def to_outcome_view(row: TaskOutcome) -> OutcomeView:
    return OutcomeView(
        outcome_id=row.outcome_id,
        task_id=row.task_id,
        final_status=AttemptOutcome(row.final_status),
        attempts=row.attempts,
        last_agent_id=row.last_agent_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
