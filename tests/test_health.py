from __future__ import annotations

import allure
import pytest

from mission_dispatch.orchestrator import health, ledger
from mission_dispatch.orchestrator.models import AttemptOutcome

pytestmark = [
    allure.epic("Dispatch Core"),
    allure.feature("Agent Health"),
]


def _record(repository, make_task, *, agent_id: str, outcome: AttemptOutcome, index: int):
    task = make_task(f"Task {index}", agent_id=agent_id)
    with repository.transaction() as session:
        attempt = ledger.open_attempt(
            session,
            task_id=task.task_id,
            agent_id=agent_id,
            attempt_number=1,
            is_retry=False,
            score=None,
        )
        ledger.close_attempt(session, attempt_id=attempt.attempt_id, outcome=outcome, error=None)
        return health.record_outcome(session, agent_id=agent_id, outcome=outcome)


def test_snapshot_defaults_to_zero_for_unknown_agent(repository, make_agent) -> None:
    agent = make_agent("Alpha")

    with repository.transaction() as session:
        snapshot = health.snapshot(session, agent_id=agent.agent_id)

    assert snapshot.total_attempts == 0
    assert snapshot.success_rate == 0.0
    assert snapshot.last_20_success_rate == 0.0
    assert snapshot.is_degraded is False


def test_seven_successes_three_failures_stays_healthy(repository, make_agent, make_task) -> None:
    agent = make_agent("Alpha")
    outcomes = [AttemptOutcome.SUCCESS] * 7 + [AttemptOutcome.FAILED] * 3

    for index, outcome in enumerate(outcomes):
        latest = _record(
            repository,
            make_task,
            agent_id=agent.agent_id,
            outcome=outcome,
            index=index,
        )

    assert latest.total_success == 7
    assert latest.total_failure == 3
    assert latest.last_20_success_rate == pytest.approx(0.7)
    assert latest.is_degraded is False


def test_three_successes_seven_failures_degrades_on_tenth_outcome(
    repository,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    outcomes = [AttemptOutcome.SUCCESS] * 3 + [AttemptOutcome.FAILED] * 7

    flags = [
        _record(
            repository,
            make_task,
            agent_id=agent.agent_id,
            outcome=outcome,
            index=index,
        ).is_degraded
        for index, outcome in enumerate(outcomes)
    ]

    assert flags[:9] == [False] * 9
    assert flags[9] is True
    assert repository.get_agent_health(agent.agent_id).is_degraded is True


def test_degraded_flag_clears_only_above_recovery_ratio(
    repository,
    make_agent,
    make_task,
) -> None:
    agent = make_agent("Alpha")
    index = 0
    for outcome in [AttemptOutcome.SUCCESS] * 3 + [AttemptOutcome.FAILED] * 7:
        _record(repository, make_task, agent_id=agent.agent_id, outcome=outcome, index=index)
        index += 1

    # 12 of 19: inside the 0.6..0.7 dead zone.
    for _ in range(9):
        latest = _record(
            repository,
            make_task,
            agent_id=agent.agent_id,
            outcome=AttemptOutcome.SUCCESS,
            index=index,
        )
        index += 1
    assert latest.is_degraded is True

    # 14 of the last 20: exactly 0.7 still keeps the flag.
    for _ in range(5):
        latest = _record(
            repository,
            make_task,
            agent_id=agent.agent_id,
            outcome=AttemptOutcome.SUCCESS,
            index=index,
        )
        index += 1
    assert latest.last_20_success_rate == pytest.approx(0.7)
    assert latest.is_degraded is True

    latest = _record(
        repository,
        make_task,
        agent_id=agent.agent_id,
        outcome=AttemptOutcome.SUCCESS,
        index=index,
    )
    assert latest.last_20_success_rate > health.RECOVER_ABOVE_RATIO
    assert latest.is_degraded is False


@pytest.mark.parametrize(
    ("current", "total", "rolling", "expected"),
    [
        (False, 9, 0.1, False),
        (False, 10, 0.59, True),
        (False, 10, 0.6, False),
        (True, 30, 0.65, True),
        (True, 30, 0.7, True),
        (True, 30, 0.71, False),
        (False, 30, 0.65, False),
    ],
)
def test_next_degraded_flag_hysteresis(
    current: bool,
    total: int,
    rolling: float,
    expected: bool,
) -> None:
    assert (
        health.next_degraded_flag(
            current=current,
            total_attempts=total,
            rolling_success_rate=rolling,
        )
        is expected
    )


def test_list_health_covers_all_agents(repository, make_agent, make_task) -> None:
    alpha = make_agent("Alpha")
    beta = make_agent("Beta")
    _record(
        repository,
        make_task,
        agent_id=alpha.agent_id,
        outcome=AttemptOutcome.SUCCESS,
        index=0,
    )

    rows = repository.list_agent_health()

    assert [row.agent_id for row in rows] == [alpha.agent_id, beta.agent_id]
    assert rows[0].total_success == 1
    assert rows[1].total_attempts == 0
