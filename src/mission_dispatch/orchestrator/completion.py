"""Completion handler: close the attempt, update health, then retry or finalize."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlmodel import Session

from mission_dispatch.orchestrator import health, ledger
from mission_dispatch.orchestrator.errors import (
    InvalidRequestError,
    NoActiveTaskError,
    NotFoundError,
)
from mission_dispatch.orchestrator.models import (
    MAX_ATTEMPTS,
    AgentStatus,
    AttemptOutcome,
    CloseResult,
    CompletionResult,
    EventType,
    FinalizeResult,
    RetryRequested,
    TaskStatus,
)
from mission_dispatch.orchestrator.outcomes import get_outcome, write_outcome
from mission_dispatch.orchestrator.repository import (
    OrchestratorRepository,
    add_event,
    find_active_session,
    find_active_task_for_agent,
    load_agent,
    load_task,
    update_agent_status,
    update_task_status,
)
from mission_dispatch.orchestrator.signals import (
    CompletionSignal,
    DirectTaskSelector,
    SessionSelector,
)
from mission_dispatch.storage.common import utc_now
from mission_dispatch.storage.sqlmodel_models import Task

logger = logging.getLogger(__name__)

_PROTECTED_STATUSES = {TaskStatus.REVIEW.value, TaskStatus.DONE.value}


class RetryPublisher(Protocol):
    def publish(self, intent: RetryRequested) -> None: ...


class CompletionHandler:
    """Apply one completion signal as a single transaction.

    A retry intent, when due, is published only after the transaction commits.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        *,
        retry_publisher: RetryPublisher | None = None,
    ) -> None:
        self.repository = repository
        self.retry_publisher = retry_publisher

    def handle(self, signal: CompletionSignal) -> CompletionResult:
        with self.repository.transaction() as session:
            task, agent_id = self._resolve(session, signal)
            result = self._apply(session, task=task, agent_id=agent_id, signal=signal)

        if result.idempotent:
            logger.info(
                "Duplicate completion for task %s by agent %s ignored",
                result.task_id,
                result.agent_id,
            )
            return result

        if result.should_retry:
            self._request_retry(result.task_id)
        logger.info(
            "Completion recorded for task %s by agent %s: outcome=%s retry=%s",
            result.task_id,
            result.agent_id,
            result.outcome.value if result.outcome else None,
            result.should_retry,
        )
        return result

    def _resolve(self, session: Session, signal: CompletionSignal) -> tuple[Task, str]:
        selector = signal.selector
        if isinstance(selector, DirectTaskSelector):
            task = load_task(session, task_id=selector.task_id)
            if task.assigned_agent_id is None:
                raise InvalidRequestError(f"Task has no assigned agent: {task.task_id}")
            return task, task.assigned_agent_id

        if isinstance(selector, SessionSelector):
            delivery_session = find_active_session(session, session_key=selector.session_key)
            if delivery_session is None:
                raise NotFoundError(f"Session not found or inactive: {selector.session_key}")
            task = find_active_task_for_agent(session, agent_id=delivery_session.agent_id)
            if task is None:
                raise NoActiveTaskError(
                    f"No active task found for agent {delivery_session.agent_id}",
                )
            return task, delivery_session.agent_id

        raise InvalidRequestError(f"Unsupported completion selector: {selector!r}")

    def _apply(
        self,
        session: Session,
        *,
        task: Task,
        agent_id: str,
        signal: CompletionSignal,
    ) -> CompletionResult:
        attempt = ledger.find_open_attempt(session, task_id=task.task_id, agent_id=agent_id)
        if attempt is None:
            previous = ledger.find_latest_closed_attempt(
                session,
                task_id=task.task_id,
                agent_id=agent_id,
            )
            if previous is not None:
                return CompletionResult(
                    task_id=task.task_id,
                    agent_id=agent_id,
                    outcome=previous.outcome,
                    idempotent=True,
                    attempts=ledger.count_attempts(session, task_id=task.task_id),
                )
            # Completion without a matching dispatch.
            attempt_count = ledger.count_attempts(session, task_id=task.task_id)
            recorded = get_outcome(session, task_id=task.task_id)
            if recorded is not None or attempt_count >= MAX_ATTEMPTS:
                logger.warning(
                    "Completion for finalized task %s by agent %s ignored",
                    task.task_id,
                    agent_id,
                )
                return CompletionResult(
                    task_id=task.task_id,
                    agent_id=agent_id,
                    outcome=recorded.final_status if recorded is not None else None,
                    idempotent=True,
                    attempts=attempt_count,
                )
            fallback_number = attempt_count + 1
            logger.warning(
                "No dispatch recorded for task %s by agent %s; synthesizing attempt %d",
                task.task_id,
                agent_id,
                fallback_number,
            )
            attempt = ledger.open_attempt(
                session,
                task_id=task.task_id,
                agent_id=agent_id,
                attempt_number=fallback_number,
                is_retry=fallback_number > 1,
                score=None,
            )

        closed = ledger.close_attempt(
            session,
            attempt_id=attempt.attempt_id,
            outcome=signal.outcome,
            error=signal.error,
            completed_at=utc_now(),
        )
        if closed == CloseResult.ALREADY_CLOSED:
            current = ledger.get_attempt(session, attempt_id=attempt.attempt_id)
            return CompletionResult(
                task_id=task.task_id,
                agent_id=agent_id,
                outcome=current.outcome if current is not None else signal.outcome,
                idempotent=True,
                attempts=ledger.count_attempts(session, task_id=task.task_id),
            )

        health.record_outcome(session, agent_id=agent_id, outcome=signal.outcome)
        attempt_count = ledger.count_attempts(session, task_id=task.task_id)
        should_retry = signal.outcome == AttemptOutcome.FAILED and attempt_count < MAX_ATTEMPTS

        new_status: TaskStatus | None = None
        if not should_retry:
            new_status = self._finalize(
                session,
                task=task,
                agent_id=agent_id,
                outcome=signal.outcome,
                attempt_count=attempt_count,
                summary=signal.summary,
            )

        update_agent_status(session, agent_id=agent_id, status=AgentStatus.STANDBY)
        return CompletionResult(
            task_id=task.task_id,
            agent_id=agent_id,
            outcome=signal.outcome,
            summary=signal.summary,
            should_retry=should_retry,
            new_status=new_status,
            attempts=attempt_count,
        )

    def _finalize(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task: Task,
        agent_id: str,
        outcome: AttemptOutcome,
        attempt_count: int,
        summary: str,
    ) -> TaskStatus:
        final_status = (
            TaskStatus.TESTING if outcome == AttemptOutcome.SUCCESS else TaskStatus.REVIEW
        )
        written = write_outcome(
            session,
            task_id=task.task_id,
            final_status=outcome,
            attempt_count=attempt_count,
            last_agent_id=agent_id,
        )
        if written == FinalizeResult.ALREADY_EXISTS:
            logger.warning(
                "Task %s already has an outcome record; status left as is",
                task.task_id,
            )
            return final_status
        if task.status not in _PROTECTED_STATUSES:
            update_task_status(session, task_id=task.task_id, status=final_status)

        agent_name = load_agent(session, agent_id=agent_id).name
        if outcome == AttemptOutcome.SUCCESS:
            add_event(
                session,
                event_type=EventType.TASK_COMPLETED,
                agent_id=agent_id,
                task_id=task.task_id,
                message=f"{agent_name} completed: {summary}",
            )
        else:
            add_event(
                session,
                event_type=EventType.TASK_STATUS_CHANGED,
                agent_id=agent_id,
                task_id=task.task_id,
                message=f"{agent_name} failed after {attempt_count} attempts",
                details={"status_to": final_status.value},
            )
        return final_status

    def _request_retry(self, task_id: str) -> None:
        if self.retry_publisher is None:
            logger.warning("Retry due for task %s but no retry publisher is configured", task_id)
            return
        self.retry_publisher.publish(RetryRequested(task_id=task_id, requested_at=utc_now()))
