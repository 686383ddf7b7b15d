from __future__ import annotations

import queue
import threading
from datetime import timedelta

import allure
import pytest

from mission_dispatch.orchestrator import ledger
from mission_dispatch.orchestrator.errors import AttemptConflictError
from mission_dispatch.orchestrator.models import AttemptOutcome, CloseResult
from mission_dispatch.orchestrator.repository import OrchestratorRepository
from mission_dispatch.storage.common import utc_now

pytestmark = [
    allure.epic("Dispatch Core"),
    allure.feature("Attempt Ledger"),
]


def test_open_attempt_records_row_and_rejects_duplicate_number(
    repository,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    task = make_task(agent_id=agent.agent_id)

    with repository.transaction() as session:
        attempt = ledger.open_attempt(
            session,
            task_id=task.task_id,
            agent_id=agent.agent_id,
            attempt_number=1,
            is_retry=False,
            score=0.0,
        )
    assert attempt.attempt_number == 1
    assert attempt.is_open
    assert attempt.auto_retry is False
    assert attempt.selection_score == 0.0

    with pytest.raises(AttemptConflictError) as caught, repository.transaction() as session:
        ledger.open_attempt(
            session,
            task_id=task.task_id,
            agent_id=agent.agent_id,
            attempt_number=1,
            is_retry=False,
            score=0.5,
        )
    assert caught.value.kind.value == "conflict"

    with repository.transaction() as session:
        assert ledger.count_attempts(session, task_id=task.task_id) == 1


def test_close_attempt_twice_keeps_first_outcome(repository, make_agent, make_task) -> None:
    agent = make_agent("Alpha")
    task = make_task(agent_id=agent.agent_id)
    with repository.transaction() as session:
        attempt = ledger.open_attempt(
            session,
            task_id=task.task_id,
            agent_id=agent.agent_id,
            attempt_number=1,
            is_retry=False,
            score=None,
        )

    with repository.transaction() as session:
        first = ledger.close_attempt(
            session,
            attempt_id=attempt.attempt_id,
            outcome=AttemptOutcome.FAILED,
            error="exit code 1",
        )
    with repository.transaction() as session:
        second = ledger.close_attempt(
            session,
            attempt_id=attempt.attempt_id,
            outcome=AttemptOutcome.SUCCESS,
            error=None,
        )
        stored = ledger.get_attempt(session, attempt_id=attempt.attempt_id)

    assert first == CloseResult.CLOSED
    assert second == CloseResult.ALREADY_CLOSED
    assert stored is not None
    assert stored.outcome == AttemptOutcome.FAILED
    assert stored.error == "exit code 1"
    assert stored.duration_seconds is not None
    assert stored.duration_seconds >= 0


def test_find_open_and_latest_closed_attempt(repository, make_agent, make_task) -> None:
    alpha = make_agent("Alpha")
    beta = make_agent("Beta")
    task = make_task(agent_id=alpha.agent_id)
    started = utc_now()

    with repository.transaction() as session:
        first = ledger.open_attempt(
            session,
            task_id=task.task_id,
            agent_id=alpha.agent_id,
            attempt_number=1,
            is_retry=False,
            score=0.0,
            dispatched_at=started,
        )
        ledger.close_attempt(
            session,
            attempt_id=first.attempt_id,
            outcome=AttemptOutcome.FAILED,
            error=None,
            completed_at=started + timedelta(seconds=42),
        )
        ledger.open_attempt(
            session,
            task_id=task.task_id,
            agent_id=beta.agent_id,
            attempt_number=2,
            is_retry=True,
            score=0.0,
        )

    with repository.transaction() as session:
        open_alpha = ledger.find_open_attempt(
            session,
            task_id=task.task_id,
            agent_id=alpha.agent_id,
        )
        open_beta = ledger.find_open_attempt(
            session,
            task_id=task.task_id,
            agent_id=beta.agent_id,
        )
        closed_alpha = ledger.find_latest_closed_attempt(
            session,
            task_id=task.task_id,
            agent_id=alpha.agent_id,
        )
        used = ledger.used_agent_ids(session, task_id=task.task_id)
        history = ledger.list_attempts(session, task_id=task.task_id)

    assert open_alpha is None
    assert open_beta is not None
    assert open_beta.attempt_number == 2
    assert open_beta.auto_retry is True
    assert closed_alpha is not None
    assert closed_alpha.attempt_id == first.attempt_id
    assert closed_alpha.duration_seconds == pytest.approx(42.0)
    assert used == {alpha.agent_id, beta.agent_id}
    assert [item.attempt_number for item in history] == [1, 2]


def test_recent_outcomes_are_newest_first_and_skip_open_attempts(
    repository,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    base = utc_now()
    for index, outcome in enumerate(
        [AttemptOutcome.SUCCESS, AttemptOutcome.SUCCESS, AttemptOutcome.FAILED],
    ):
        task = make_task(f"Task {index}", agent_id=agent.agent_id)
        with repository.transaction() as session:
            attempt = ledger.open_attempt(
                session,
                task_id=task.task_id,
                agent_id=agent.agent_id,
                attempt_number=1,
                is_retry=False,
                score=None,
                dispatched_at=base,
            )
            ledger.close_attempt(
                session,
                attempt_id=attempt.attempt_id,
                outcome=outcome,
                error=None,
                completed_at=base + timedelta(minutes=index),
            )
    pending = make_task("Pending", agent_id=agent.agent_id)
    with repository.transaction() as session:
        ledger.open_attempt(
            session,
            task_id=pending.task_id,
            agent_id=agent.agent_id,
            attempt_number=1,
            is_retry=False,
            score=None,
        )
        recent = ledger.recent_outcomes(session, agent_id=agent.agent_id)

    assert recent == [AttemptOutcome.FAILED, AttemptOutcome.SUCCESS, AttemptOutcome.SUCCESS]


def test_concurrent_open_attempt_allows_exactly_one_winner(
    db_path,
    repository,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    task = make_task(agent_id=agent.agent_id)
    start = threading.Event()
    results: queue.Queue[str] = queue.Queue()

    def _worker() -> None:
        repo = OrchestratorRepository(db_path)
        try:
            start.wait(timeout=5)
            with repo.transaction() as session:
                ledger.open_attempt(
                    session,
                    task_id=task.task_id,
                    agent_id=agent.agent_id,
                    attempt_number=1,
                    is_retry=False,
                    score=0.0,
                )
            results.put("opened")
        except AttemptConflictError:
            results.put("conflict")
        finally:
            repo.close()

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    outcomes = [results.get_nowait() for _ in range(6)]
    assert outcomes.count("opened") == 1
    assert outcomes.count("conflict") == 5
    with repository.transaction() as session:
        assert ledger.count_attempts(session, task_id=task.task_id) == 1
