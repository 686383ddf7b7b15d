"""Dispatch decision engine: pick the agent for the next attempt and deliver the task."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlmodel import Session

from mission_dispatch.gateway.client import Gateway, GatewayError
from mission_dispatch.orchestrator import health, ledger
from mission_dispatch.orchestrator.errors import (
    AttemptsExhaustedError,
    DeliveryFailureError,
    InvalidRequestError,
)
from mission_dispatch.orchestrator.message import build_task_message
from mission_dispatch.orchestrator.models import (
    MAX_ATTEMPTS,
    AgentStatus,
    DispatchResult,
    EventType,
    TaskStatus,
)
from mission_dispatch.orchestrator.repository import (
    OrchestratorRepository,
    add_event,
    list_agent_rows,
    load_agent,
    load_task,
    reassign_task,
    resolve_or_create_session,
    update_agent_status,
    update_task_status,
)
from mission_dispatch.orchestrator.scoring import rank_candidates, score
from mission_dispatch.storage.common import utc_now
from mission_dispatch.storage.sqlmodel_models import Agent, Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _DispatchPlan:
    """Everything committed before the outbound call."""

    task_id: str
    task_title: str
    agent_id: str
    agent_name: str
    runtime_name: str
    session_key: str
    attempt_number: int
    score: float
    reassigned: bool
    message: str

    @property
    def routing_key(self) -> str:
        return f"agent:{self.runtime_name}:{self.session_key}"


class DispatchEngine:
    """Selects the executing agent, records the attempt, then delivers the task."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        gateway: Gateway,
        projects_path: str,
        console_url: str,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.projects_path = projects_path
        self.console_url = console_url

    def dispatch(self, task_id: str) -> DispatchResult:
        """Dispatch the next attempt of ``task_id``.

        The attempt row is committed before delivery. If delivery fails the
        attempt stays open and ``DeliveryFailureError`` is raised; a later
        completion signal or the operator has to close it.
        Unknown, unassigned and exhausted tasks are rejected before the gateway
        is contacted; the same checks run again inside the attempt transaction.
        """

        self._check_dispatchable(task_id)
        self._ensure_connected(task_id=task_id)
        plan = self._commit_attempt(task_id)
        self._deliver(plan)
        self._mark_dispatched(plan)
        logger.info(
            "Dispatched task %s attempt %d to agent %s (score=%.2f)",
            plan.task_id,
            plan.attempt_number,
            plan.agent_id,
            plan.score,
        )
        return DispatchResult(
            task_id=plan.task_id,
            agent_id=plan.agent_id,
            attempt_number=plan.attempt_number,
            selection_score=plan.score,
            session_key=plan.session_key,
            reassigned=plan.reassigned,
        )

    def _check_dispatchable(self, task_id: str) -> None:
        """Reject unknown, unassigned or exhausted tasks before touching the gateway."""

        with Session(self.repository.engine) as session:
            task = load_task(session, task_id=task_id)
            _require_dispatchable(session, task)

    def _ensure_connected(self, *, task_id: str) -> None:
        if self.gateway.is_connected():
            return
        try:
            self.gateway.connect()
        except GatewayError as error:
            logger.error("Failed to connect to agent gateway for task %s: %s", task_id, error)
            raise DeliveryFailureError(
                f"Failed to connect to agent gateway: {error}",
                task_id=task_id,
                attempt_number=0,
            ) from error

    def _commit_attempt(self, task_id: str) -> _DispatchPlan:
        with self.repository.transaction() as session:
            task = load_task(session, task_id=task_id)
            assigned, attempt_number = _require_dispatchable(session, task)

            selected, selection_score = self._select_agent(
                session,
                task=task,
                assigned=assigned,
                attempt_number=attempt_number,
            )
            reassigned = selected.agent_id != assigned.agent_id
            if reassigned:
                reassign_task(session, task_id=task_id, agent_id=selected.agent_id)
                add_event(
                    session,
                    event_type=EventType.TASK_ASSIGNED,
                    agent_id=selected.agent_id,
                    task_id=task_id,
                    message=f'Task "{task.title}" reassigned to {selected.name} for retry',
                    details={"from_agent_id": assigned.agent_id, "attempt": attempt_number},
                )

            ledger.open_attempt(
                session,
                task_id=task_id,
                agent_id=selected.agent_id,
                attempt_number=attempt_number,
                is_retry=attempt_number > 1,
                score=selection_score,
            )

            delivery_session, _ = resolve_or_create_session(session, agent=selected)
            message = build_task_message(
                task=task,
                agent=selected,
                projects_path=self.projects_path,
                console_url=self.console_url,
            )
            return _DispatchPlan(
                task_id=task_id,
                task_title=task.title,
                agent_id=selected.agent_id,
                agent_name=selected.name,
                runtime_name=selected.runtime_name or "main",
                session_key=delivery_session.session_key,
                attempt_number=attempt_number,
                score=selection_score,
                reassigned=reassigned,
                message=message,
            )

    def _select_agent(
        self,
        session: Session,
        *,
        task: Task,
        assigned: Agent,
        attempt_number: int,
    ) -> tuple[Agent, float]:
        if attempt_number == 1:
            return assigned, score(health.snapshot(session, agent_id=assigned.agent_id))

        available = [
            agent
            for agent in list_agent_rows(session)
            if agent.status != AgentStatus.OFFLINE.value
        ]
        used = ledger.used_agent_ids(session, task_id=task.task_id)
        untried = [agent for agent in available if agent.agent_id not in used]
        pool = untried or available
        if not pool:
            logger.warning(
                "No eligible agents for retry of task %s; keeping agent %s",
                task.task_id,
                assigned.agent_id,
            )
            return assigned, score(health.snapshot(session, agent_id=assigned.agent_id))

        health_by_agent = {
            agent.agent_id: health.snapshot(session, agent_id=agent.agent_id) for agent in pool
        }
        best_id, best_score = rank_candidates(
            [agent.agent_id for agent in pool],
            health_by_agent,
        )[0]
        selected = next(agent for agent in pool if agent.agent_id == best_id)
        return selected, best_score

    def _deliver(self, plan: _DispatchPlan) -> None:
        idempotency_key = f"dispatch-{plan.task_id}-{int(utc_now().timestamp() * 1000)}"
        try:
            self.gateway.call(
                "chat.send",
                {
                    "sessionKey": plan.routing_key,
                    "message": plan.message,
                    "idempotencyKey": idempotency_key,
                },
            )
        except GatewayError as error:
            logger.error(
                "Failed to send task %s attempt %d to agent %s: %s",
                plan.task_id,
                plan.attempt_number,
                plan.agent_id,
                error,
            )
            raise DeliveryFailureError(
                f"Failed to send task to agent: {error}",
                task_id=plan.task_id,
                attempt_number=plan.attempt_number,
            ) from error

    def _mark_dispatched(self, plan: _DispatchPlan) -> None:
        with self.repository.transaction() as session:
            update_task_status(session, task_id=plan.task_id, status=TaskStatus.IN_PROGRESS)
            update_agent_status(session, agent_id=plan.agent_id, status=AgentStatus.WORKING)
            add_event(
                session,
                event_type=EventType.TASK_DISPATCHED,
                agent_id=plan.agent_id,
                task_id=plan.task_id,
                message=f'Task "{plan.task_title}" dispatched to {plan.agent_name}',
                details={"attempt": plan.attempt_number, "session_key": plan.session_key},
            )


def _require_dispatchable(session: Session, task: Task) -> tuple[Agent, int]:
    """Assigned agent and next attempt number, or the error that forbids dispatch."""

    if task.assigned_agent_id is None:
        raise InvalidRequestError(f"Task has no assigned agent: {task.task_id}")
    assigned = load_agent(session, agent_id=task.assigned_agent_id)
    attempts_so_far = ledger.count_attempts(session, task_id=task.task_id)
    if attempts_so_far >= MAX_ATTEMPTS:
        raise AttemptsExhaustedError(task_id=task.task_id, attempts=attempts_so_far)
    return assigned, attempts_so_far + 1
