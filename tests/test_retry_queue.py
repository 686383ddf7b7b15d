from __future__ import annotations

import logging
import threading

import allure

from mission_dispatch.orchestrator.errors import AttemptsExhaustedError
from mission_dispatch.orchestrator.models import DispatchResult, RetryRequested
from mission_dispatch.orchestrator.retry_queue import RetryDispatcher
from mission_dispatch.storage.common import utc_now

pytestmark = [
    allure.epic("Dispatch Core"),
    allure.feature("Retry Dispatcher"),
]


class _ScriptedDispatcher:
    def __init__(self, failures: dict[str, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.dispatched: list[str] = []
        self.seen = threading.Event()

    def dispatch(self, task_id: str) -> DispatchResult:
        self.dispatched.append(task_id)
        self.seen.set()
        if task_id in self.failures:
            raise self.failures[task_id]
        return DispatchResult(
            task_id=task_id,
            agent_id="agent-b",
            attempt_number=2,
            selection_score=0.8,
            session_key="mission-control-beta",
            reassigned=True,
        )


def _intent(task_id: str) -> RetryRequested:
    return RetryRequested(task_id=task_id, requested_at=utc_now())


def test_drain_dispatches_queued_intents_in_order() -> None:
    dispatcher = _ScriptedDispatcher()
    retries = RetryDispatcher(dispatcher)
    retries.publish(_intent("task-1"))
    retries.publish(_intent("task-2"))
    assert retries.pending() == 2

    results = retries.drain()

    assert [result.task_id for result in results] == ["task-1", "task-2"]
    assert dispatcher.dispatched == ["task-1", "task-2"]
    assert retries.pending() == 0
    assert retries.drain() == []


def test_failed_retry_is_logged_and_dropped(caplog) -> None:
    dispatcher = _ScriptedDispatcher(
        failures={
            "task-1": AttemptsExhaustedError(task_id="task-1", attempts=2),
            "task-2": RuntimeError("boom"),
        },
    )
    retries = RetryDispatcher(dispatcher)
    for task_id in ("task-1", "task-2", "task-3"):
        retries.publish(_intent(task_id))

    with caplog.at_level(logging.WARNING, logger="mission_dispatch.orchestrator.retry_queue"):
        results = retries.drain()

    assert [result.task_id for result in results] == ["task-3"]
    assert "Retry dispatch for task task-1 failed [attempts_exhausted]" in caplog.text
    assert "Retry dispatch for task task-2 crashed" in caplog.text


def test_background_thread_consumes_published_intents() -> None:
    dispatcher = _ScriptedDispatcher()
    retries = RetryDispatcher(dispatcher, poll_interval_seconds=0.05)
    retries.start()
    try:
        retries.publish(_intent("task-7"))
        assert dispatcher.seen.wait(timeout=5)
    finally:
        retries.stop(timeout=5)

    assert dispatcher.dispatched == ["task-7"]
    assert retries.pending() == 0
