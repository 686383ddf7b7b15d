"""Persistence facade for the dispatch store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from mission_dispatch.orchestrator import health, ledger, outcomes
from mission_dispatch.orchestrator.errors import NotFoundError
from mission_dispatch.orchestrator.models import (
    AgentCreate,
    AgentHealth,
    AgentStatus,
    AgentView,
    AttemptView,
    DeliverySessionView,
    EventType,
    EventView,
    OutcomeView,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskView,
)
from mission_dispatch.storage.alembic_runner import upgrade_head
from mission_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from mission_dispatch.storage.sqlmodel_models import (
    Agent,
    DeliverySession,
    Event,
    Task,
    TaskOutcome,
)

SESSION_CHANNEL = "mission-control"
SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"


class OrchestratorRepository:
    """Store facade: transactions, agents, tasks, delivery sessions, events."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One write transaction; commits on success, rolls back on any error."""

        with Session(self.engine) as session:
            try:
                yield session
                session.commit()
            except BaseException:
                session.rollback()
                raise

    # -- agents ---------------------------------------------------------------

    def create_agent(self, payload: AgentCreate) -> AgentView:
        now = utc_now()
        with self.transaction() as session:
            row = Agent(
                agent_id=payload.agent_id or str(uuid4()),
                name=payload.name,
                status=payload.status.value,
                runtime_name=payload.runtime_name,
                soul_md=payload.soul_md,
                user_md=payload.user_md,
                agents_md=payload.agents_md,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            return to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(Agent, agent_id)
            return to_agent_view(row) if row is not None else None

    def list_agents(self) -> list[AgentView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Agent).order_by(col(Agent.created_at).asc())).all()
            return [to_agent_view(row) for row in rows]

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> AgentView:
        with self.transaction() as session:
            update_agent_status(session, agent_id=agent_id, status=status)
            row = load_agent(session, agent_id=agent_id)
            return to_agent_view(row)

    # -- tasks ----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        now = utc_now()
        with self.transaction() as session:
            if payload.assigned_agent_id is not None:
                load_agent(session, agent_id=payload.assigned_agent_id)
            row = Task(
                task_id=payload.task_id or str(uuid4()),
                title=payload.title,
                description=payload.description,
                priority=payload.priority.value,
                status=(
                    TaskStatus.ASSIGNED.value
                    if payload.assigned_agent_id is not None
                    else TaskStatus.INBOX.value
                ),
                assigned_agent_id=payload.assigned_agent_id,
                due_date=payload.due_date,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            return to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return to_task_view(row) if row is not None else None

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        """List recently updated tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.updated_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
            return [to_task_view(row) for row in rows]

    def assign_task(self, task_id: str, agent_id: str) -> TaskView:
        """Operator assignment; moves an inbox task to ``assigned``."""

        with self.transaction() as session:
            task = load_task(session, task_id=task_id)
            agent = load_agent(session, agent_id=agent_id)
            values: dict[str, object] = {
                "assigned_agent_id": agent_id,
                "updated_at": to_db_datetime(utc_now()),
            }
            if task.status == TaskStatus.INBOX.value:
                values["status"] = TaskStatus.ASSIGNED.value
            session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id)
                .values(**values)
                .execution_options(synchronize_session=False),
            )
            add_event(
                session,
                event_type=EventType.TASK_ASSIGNED,
                agent_id=agent_id,
                task_id=task_id,
                message=f'Task "{task.title}" assigned to {agent.name}',
            )
            return to_task_view(load_task(session, task_id=task_id))

    def set_task_status(self, task_id: str, status: TaskStatus) -> TaskView:
        """Explicit operator status change."""

        with self.transaction() as session:
            task = load_task(session, task_id=task_id)
            update_task_status(session, task_id=task_id, status=status)
            add_event(
                session,
                event_type=EventType.TASK_STATUS_CHANGED,
                agent_id=task.assigned_agent_id,
                task_id=task_id,
                message=f'Task "{task.title}" moved to {status.value}',
                details={"status_from": task.status, "status_to": status.value},
            )
            return to_task_view(load_task(session, task_id=task_id))

    # -- delivery sessions and events ----------------------------------------

    def find_active_session(self, session_key: str) -> DeliverySessionView | None:
        with Session(self.engine) as session:
            return find_active_session(session, session_key=session_key)

    def list_events(
        self,
        *,
        task_id: str | None = None,
        event_type: EventType | None = None,
        limit: int = 50,
    ) -> list[EventView]:
        with Session(self.engine) as session:
            statement = select(Event).order_by(col(Event.event_id).desc()).limit(limit)
            if task_id is not None:
                statement = statement.where(Event.task_id == task_id)
            if event_type is not None:
                statement = statement.where(Event.event_type == event_type.value)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    # -- attempts, health, outcomes (read side) -------------------------------

    def list_attempts(self, task_id: str) -> list[AttemptView]:
        with Session(self.engine) as session:
            load_task(session, task_id=task_id)
            return ledger.list_attempts(session, task_id=task_id)

    def get_agent_health(self, agent_id: str) -> AgentHealth:
        with Session(self.engine) as session:
            load_agent(session, agent_id=agent_id)
            return health.snapshot(session, agent_id=agent_id)

    def list_agent_health(self) -> list[AgentHealth]:
        with Session(self.engine) as session:
            return health.list_health(session)

    def get_outcome(self, task_id: str) -> OutcomeView | None:
        with Session(self.engine) as session:
            return outcomes.get_outcome(session, task_id=task_id)

    def list_outcomes(self, *, limit: int | None = None) -> list[OutcomeView]:
        """Outcome records, newest first."""

        with Session(self.engine) as session:
            statement = select(TaskOutcome).order_by(col(TaskOutcome.created_at).desc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [outcomes.to_outcome_view(row) for row in rows]


def load_task(session: Session, *, task_id: str) -> Task:
    row = session.exec(
        select(Task).where(Task.task_id == task_id).execution_options(populate_existing=True),
    ).one_or_none()
    if row is None:
        raise NotFoundError(f"Task not found: {task_id}")
    return row


def load_agent(session: Session, *, agent_id: str) -> Agent:
    row = session.exec(
        select(Agent).where(Agent.agent_id == agent_id).execution_options(populate_existing=True),
    ).one_or_none()
    if row is None:
        raise NotFoundError(f"Agent not found: {agent_id}")
    return row


def list_agent_rows(session: Session) -> list[Agent]:
    return list(
        session.exec(
            select(Agent)
            .order_by(col(Agent.created_at).asc(), col(Agent.agent_id).asc())
            .execution_options(populate_existing=True),
        ).all(),
    )


def update_task_status(session: Session, *, task_id: str, status: TaskStatus) -> None:
    session.exec(
        sa_update(Task)
        .where(col(Task.task_id) == task_id)
        .values(status=status.value, updated_at=to_db_datetime(utc_now()))
        .execution_options(synchronize_session=False),
    )


def reassign_task(session: Session, *, task_id: str, agent_id: str) -> None:
    session.exec(
        sa_update(Task)
        .where(col(Task.task_id) == task_id)
        .values(assigned_agent_id=agent_id, updated_at=to_db_datetime(utc_now()))
        .execution_options(synchronize_session=False),
    )


def update_agent_status(session: Session, *, agent_id: str, status: AgentStatus) -> None:
    result = session.exec(
        sa_update(Agent)
        .where(col(Agent.agent_id) == agent_id)
        .values(status=status.value, updated_at=to_db_datetime(utc_now()))
        .execution_options(synchronize_session=False),
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Agent not found: {agent_id}")


def find_active_task_for_agent(session: Session, *, agent_id: str) -> Task | None:
    """Agent's most recently updated task that is still assigned or in progress."""

    return session.exec(
        select(Task)
        .where(
            Task.assigned_agent_id == agent_id,
            col(Task.status).in_([TaskStatus.ASSIGNED.value, TaskStatus.IN_PROGRESS.value]),
        )
        .order_by(col(Task.updated_at).desc())
        .limit(1)
        .execution_options(populate_existing=True),
    ).one_or_none()


def session_key_for(agent_name: str) -> str:
    """Durable session key derived from the agent's display name."""

    slug = re.sub(r"\s+", "-", agent_name.strip().lower())
    return f"{SESSION_CHANNEL}-{slug}"


def resolve_or_create_session(
    session: Session,
    *,
    agent: Agent,
) -> tuple[DeliverySessionView, bool]:
    """Return the agent's active delivery session, creating it when absent.

    The partial unique index on ``(agent_id) WHERE status = 'active'`` keeps a
    single active session even when two dispatches race.
    """

    existing = _active_session_for_agent(session, agent_id=agent.agent_id)
    if existing is not None:
        return _to_session_view(existing), False

    now = to_db_datetime(utc_now())
    result = session.exec(
        sqlite_insert(DeliverySession.__table__)  # type: ignore[arg-type]
        .values(
            session_id=str(uuid4()),
            agent_id=agent.agent_id,
            session_key=session_key_for(agent.name),
            channel=SESSION_CHANNEL,
            status=SESSION_ACTIVE,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(),
    )
    created = result.rowcount == 1
    row = _active_session_for_agent(session, agent_id=agent.agent_id)
    if row is None:
        raise RuntimeError(f"Failed to create delivery session for agent {agent.agent_id}")
    if created:
        add_event(
            session,
            event_type=EventType.AGENT_STATUS_CHANGED,
            agent_id=agent.agent_id,
            message=f"{agent.name} session created",
        )
    return _to_session_view(row), created


def find_active_session(session: Session, *, session_key: str) -> DeliverySessionView | None:
    row = session.exec(
        select(DeliverySession)
        .where(
            DeliverySession.session_key == session_key,
            DeliverySession.status == SESSION_ACTIVE,
        )
        .order_by(col(DeliverySession.updated_at).desc())
        .limit(1),
    ).first()
    return _to_session_view(row) if row is not None else None


def add_event(  # noqa: PLR0913
    session: Session,
    *,
    event_type: EventType,
    message: str,
    agent_id: str | None = None,
    task_id: str | None = None,
    details: dict[str, object] | None = None,
) -> None:
    """Append one event to the notification log."""

    session.add(
        Event(
            event_type=event_type.value,
            agent_id=agent_id,
            task_id=task_id,
            message=message,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=to_db_datetime(utc_now()),
        ),
    )


def _active_session_for_agent(session: Session, *, agent_id: str) -> DeliverySession | None:
    return session.exec(
        select(DeliverySession)
        .where(
            DeliverySession.agent_id == agent_id,
            DeliverySession.status == SESSION_ACTIVE,
        )
        .execution_options(populate_existing=True),
    ).one_or_none()


def to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        status=AgentStatus(row.status),
        runtime_name=row.runtime_name,
        soul_md=row.soul_md,
        user_md=row.user_md,
        agents_md=row.agents_md,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        priority=TaskPriority(row.priority),
        status=TaskStatus(row.status),
        assigned_agent_id=row.assigned_agent_id,
        due_date=row.due_date,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_session_view(row: DeliverySession) -> DeliverySessionView:
    return DeliverySessionView(
        session_id=row.session_id,
        agent_id=row.agent_id,
        session_key=row.session_key,
        channel=row.channel,
        status=row.status,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_event_view(row: Event) -> EventView:
    details = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return EventView(
        event_id=row.event_id or 0,
        event_type=row.event_type,
        agent_id=row.agent_id,
        task_id=row.task_id,
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
