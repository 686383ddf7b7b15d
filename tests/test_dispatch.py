from __future__ import annotations

import queue
import threading

import allure
import pytest

from mission_dispatch.orchestrator import ledger
from mission_dispatch.orchestrator.completion import CompletionHandler
from mission_dispatch.orchestrator.dispatch import DispatchEngine
from mission_dispatch.orchestrator.errors import (
    AttemptsExhaustedError,
    DeliveryFailureError,
    InvalidRequestError,
    NotFoundError,
)
from mission_dispatch.orchestrator.models import (
    AgentStatus,
    EventType,
    TaskPriority,
    TaskStatus,
)
from mission_dispatch.orchestrator.repository import OrchestratorRepository
from mission_dispatch.orchestrator.signals import build_signal

pytestmark = [
    allure.epic("Dispatch Core"),
    allure.feature("Dispatch Decision Engine"),
]


def _fail(repository, publisher, task_id: str) -> None:
    CompletionHandler(repository, retry_publisher=publisher).handle(
        build_signal(task_id=task_id, outcome="failed", error="agent crashed"),
    )


def test_first_dispatch_goes_to_assigned_agent(
    repository,
    engine,
    gateway,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha Team", runtime_name="builder", soul_md="Be precise.")
    task = make_task(
        "Landing Page v2",
        agent_id=agent.agent_id,
        priority=TaskPriority.URGENT,
        description="Hero section plus pricing table",
    )

    result = engine.dispatch(task.task_id)

    assert result.agent_id == agent.agent_id
    assert result.attempt_number == 1
    assert result.selection_score == 0.0
    assert result.reassigned is False
    assert result.session_key == "mission-control-alpha-team"

    assert len(gateway.sent) == 1
    sent = gateway.sent[0]
    assert sent["sessionKey"] == "agent:builder:mission-control-alpha-team"
    assert sent["idempotencyKey"].startswith(f"dispatch-{task.task_id}-")
    assert sent["message"].startswith("--- AGENT SOUL ---\nBe precise.")
    assert "🔴 **NEW TASK ASSIGNED**" in sent["message"]
    assert "**Priority:** URGENT" in sent["message"]
    assert "**OUTPUT DIRECTORY:** ~/projects/landing-page-v2" in sent["message"]
    assert "TASK_COMPLETE: [brief summary of what you did]" in sent["message"]

    stored_task = repository.get_task(task.task_id)
    stored_agent = repository.get_agent(agent.agent_id)
    assert stored_task is not None
    assert stored_task.status == TaskStatus.IN_PROGRESS
    assert stored_agent is not None
    assert stored_agent.status == AgentStatus.WORKING

    attempts = repository.list_attempts(task.task_id)
    assert len(attempts) == 1
    assert attempts[0].is_open
    assert attempts[0].auto_retry is False

    event_types = [event.event_type for event in repository.list_events(limit=10)]
    assert EventType.TASK_DISPATCHED.value in event_types
    session_events = repository.list_events(event_type=EventType.AGENT_STATUS_CHANGED)
    assert [event.message for event in session_events] == ["Alpha Team session created"]
    assert repository.find_active_session("mission-control-alpha-team") is not None


def test_second_dispatch_reuses_active_delivery_session(
    repository,
    engine,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    engine.dispatch(make_task("One", agent_id=agent.agent_id).task_id)
    engine.dispatch(make_task("Two", agent_id=agent.agent_id).task_id)

    session_events = repository.list_events(event_type=EventType.AGENT_STATUS_CHANGED)
    assert len(session_events) == 1


def test_dispatch_rejects_unknown_or_unassigned_task(engine, make_task) -> None:
    with pytest.raises(NotFoundError):
        engine.dispatch("missing-task")

    task = make_task()
    with pytest.raises(InvalidRequestError, match="no assigned agent"):
        engine.dispatch(task.task_id)


def test_retry_goes_to_best_untried_non_offline_agent(
    repository,
    engine,
    publisher,
    seed_stats,
    make_agent,
    make_task,
) -> None:
    alpha = make_agent("Alpha")
    offline_star = make_agent("Offline Star", status=AgentStatus.OFFLINE)
    average = make_agent("Average")
    degraded = make_agent("Degraded")
    steady = make_agent("Steady")
    seed_stats(offline_star.agent_id, success=10, failure=0)
    seed_stats(average.agent_id, success=5, failure=5)
    seed_stats(degraded.agent_id, success=9, failure=1, degraded=True)
    seed_stats(steady.agent_id, success=8, failure=2)
    task = make_task(agent_id=alpha.agent_id)

    engine.dispatch(task.task_id)
    _fail(repository, publisher, task.task_id)
    retry = engine.dispatch(task.task_id)

    assert retry.agent_id == steady.agent_id
    assert retry.attempt_number == 2
    assert retry.selection_score == pytest.approx(0.8)
    assert retry.reassigned is True

    stored_task = repository.get_task(task.task_id)
    assert stored_task is not None
    assert stored_task.assigned_agent_id == steady.agent_id
    attempts = repository.list_attempts(task.task_id)
    assert [item.agent_id for item in attempts] == [alpha.agent_id, steady.agent_id]
    assert attempts[1].auto_retry is True
    assert attempts[1].selection_score == pytest.approx(0.8)

    reassigned = repository.list_events(
        task_id=task.task_id,
        event_type=EventType.TASK_ASSIGNED,
    )
    assert reassigned[0].message.endswith("reassigned to Steady for retry")


def test_retry_reuses_agent_when_every_available_agent_was_tried(
    repository,
    engine,
    publisher,
    make_agent,
    make_task,
) -> None:
    alpha = make_agent("Alpha")
    make_agent("Sleeping", status=AgentStatus.OFFLINE)
    task = make_task(agent_id=alpha.agent_id)

    engine.dispatch(task.task_id)
    _fail(repository, publisher, task.task_id)
    retry = engine.dispatch(task.task_id)

    assert retry.agent_id == alpha.agent_id
    assert retry.attempt_number == 2
    assert retry.reassigned is False


def test_retry_keeps_assigned_agent_when_pool_is_empty(
    repository,
    engine,
    publisher,
    make_agent,
    make_task,
) -> None:
    alpha = make_agent("Alpha")
    task = make_task(agent_id=alpha.agent_id)
    engine.dispatch(task.task_id)
    _fail(repository, publisher, task.task_id)
    repository.set_agent_status(alpha.agent_id, AgentStatus.OFFLINE)

    retry = engine.dispatch(task.task_id)

    assert retry.agent_id == alpha.agent_id
    assert retry.selection_score == 0.0


def test_third_dispatch_is_refused_without_new_attempt(
    repository,
    engine,
    publisher,
    make_agent,
    make_task,
) -> None:
    alpha = make_agent("Alpha")
    make_agent("Beta")
    task = make_task(agent_id=alpha.agent_id)
    engine.dispatch(task.task_id)
    _fail(repository, publisher, task.task_id)
    engine.dispatch(task.task_id)

    with pytest.raises(AttemptsExhaustedError) as caught:
        engine.dispatch(task.task_id)

    assert caught.value.attempts == 2
    assert len(repository.list_attempts(task.task_id)) == 2


def test_delivery_failure_leaves_attempt_open(
    repository,
    engine,
    gateway,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    task = make_task(agent_id=agent.agent_id)
    gateway.fail_send = True

    with pytest.raises(DeliveryFailureError) as caught:
        engine.dispatch(task.task_id)

    assert caught.value.kind.value == "delivery_failure"
    assert caught.value.attempt_number == 1
    attempts = repository.list_attempts(task.task_id)
    assert len(attempts) == 1
    assert attempts[0].is_open
    stored_task = repository.get_task(task.task_id)
    stored_agent = repository.get_agent(agent.agent_id)
    assert stored_task is not None
    assert stored_task.status == TaskStatus.ASSIGNED
    assert stored_agent is not None
    assert stored_agent.status == AgentStatus.STANDBY


def test_unreachable_gateway_records_no_attempt(
    repository,
    engine,
    gateway,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    task = make_task(agent_id=agent.agent_id)
    gateway.fail_connect = True

    with pytest.raises(DeliveryFailureError, match="connect"):
        engine.dispatch(task.task_id)

    assert repository.list_attempts(task.task_id) == []


def test_concurrent_dispatches_keep_attempt_numbers_contiguous(
    db_path,
    repository,
    gateway,
    make_agent,
    make_task,
) -> None:
    alpha = make_agent("Alpha")
    make_agent("Beta")
    task = make_task(agent_id=alpha.agent_id)
    start = threading.Event()
    results: queue.Queue[str] = queue.Queue()

    def _worker() -> None:
        repo = OrchestratorRepository(db_path)
        worker_engine = DispatchEngine(
            repository=repo,
            gateway=gateway,
            projects_path="~/projects",
            console_url="http://localhost:3000",
        )
        try:
            start.wait(timeout=5)
            result = worker_engine.dispatch(task.task_id)
            results.put(f"attempt-{result.attempt_number}")
        except AttemptsExhaustedError:
            results.put("exhausted")
        finally:
            repo.close()

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    outcomes = sorted(results.get_nowait() for _ in range(4))
    assert outcomes == ["attempt-1", "attempt-2", "exhausted", "exhausted"]
    with repository.transaction() as session:
        history = ledger.list_attempts(session, task_id=task.task_id)
    numbers = [item.attempt_number for item in history]
    assert numbers == [1, 2]



def test_exhausted_task_is_refused_even_when_gateway_is_down(
    repository,
    engine,
    gateway,
    publisher,
    make_agent,
    make_task,
) -> None:
    alpha = make_agent("Alpha")
    make_agent("Beta")
    task = make_task(agent_id=alpha.agent_id)
    engine.dispatch(task.task_id)
    _fail(repository, publisher, task.task_id)
    engine.dispatch(task.task_id)
    _fail(repository, publisher, task.task_id)
    gateway.disconnect()
    gateway.fail_connect = True

    with pytest.raises(AttemptsExhaustedError) as caught:
        engine.dispatch(task.task_id)

    assert caught.value.kind.value == "attempts_exhausted"
    assert len(repository.list_attempts(task.task_id)) == 2


def test_request_errors_keep_their_kind_when_gateway_is_down(
    engine,
    gateway,
    make_task,
) -> None:
    gateway.fail_connect = True
    inbox_task = make_task()

    with pytest.raises(NotFoundError):
        engine.dispatch("no-such-task")
    with pytest.raises(InvalidRequestError):
        engine.dispatch(inbox_task.task_id)
    assert gateway.calls == []


def test_task_message_points_agent_at_completion_marker(
    engine,
    gateway,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    task = make_task(agent_id=agent.agent_id)

    engine.dispatch(task.task_id)

    message = gateway.sent[0]["message"]
    assert "**Task board:** http://localhost:3000" in message
    assert "/api/" not in message
    assert message.endswith("`TASK_COMPLETE: [brief summary of what you did]`")
