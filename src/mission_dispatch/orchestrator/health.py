"""Per-agent health counters with a hysteresis-based degraded flag."""

from __future__ import annotations

import logging

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from mission_dispatch.orchestrator import ledger
from mission_dispatch.orchestrator.models import AgentHealth, AttemptOutcome
from mission_dispatch.storage.common import to_db_datetime, utc_now
from mission_dispatch.storage.sqlmodel_models import Agent, AgentStats

logger = logging.getLogger(__name__)

DEGRADE_MIN_ATTEMPTS = 10
DEGRADE_BELOW_RATIO = 0.6
RECOVER_ABOVE_RATIO = 0.7


def record_outcome(session: Session, *, agent_id: str, outcome: AttemptOutcome) -> AgentHealth:
    """Count one closed attempt and re-evaluate the degraded flag.

    Must run in the same transaction that closed the attempt, so that the
    rolling window already contains it.
    """

    now = to_db_datetime(utc_now())
    session.exec(
        sqlite_insert(AgentStats.__table__)  # type: ignore[arg-type]
        .values(
            agent_id=agent_id,
            total_success=0,
            total_failure=0,
            is_degraded=False,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["agent_id"]),
    )
    if outcome == AttemptOutcome.SUCCESS:
        increment = {"total_success": col(AgentStats.total_success) + 1}
    else:
        increment = {"total_failure": col(AgentStats.total_failure) + 1}
    session.exec(
        sa_update(AgentStats)
        .where(col(AgentStats.agent_id) == agent_id)
        .values(updated_at=now, **increment)
        .execution_options(synchronize_session=False),
    )

    stats = _load_stats(session, agent_id=agent_id)
    if stats is None:
        raise RuntimeError(f"Agent stats row missing after upsert: {agent_id}")
    rolling = rolling_success_rate(session, agent_id=agent_id)
    total = stats.total_success + stats.total_failure
    degraded = next_degraded_flag(
        current=bool(stats.is_degraded),
        total_attempts=total,
        rolling_success_rate=rolling,
    )
    if degraded != bool(stats.is_degraded):
        session.exec(
            sa_update(AgentStats)
            .where(col(AgentStats.agent_id) == agent_id)
            .values(is_degraded=degraded)
            .execution_options(synchronize_session=False),
        )
        logger.info(
            "Agent %s degraded flag %s (rolling_20=%.2f total=%d)",
            agent_id,
            "set" if degraded else "cleared",
            rolling,
            total,
        )

    return AgentHealth(
        agent_id=agent_id,
        total_success=stats.total_success,
        total_failure=stats.total_failure,
        is_degraded=degraded,
        last_20_success_rate=rolling,
    )


def snapshot(session: Session, *, agent_id: str) -> AgentHealth:
    """Current health; a zero-valued default when nothing was recorded yet."""

    stats = _load_stats(session, agent_id=agent_id)
    if stats is None:
        return AgentHealth(agent_id=agent_id)
    return AgentHealth(
        agent_id=agent_id,
        total_success=stats.total_success,
        total_failure=stats.total_failure,
        is_degraded=bool(stats.is_degraded),
        last_20_success_rate=rolling_success_rate(session, agent_id=agent_id),
    )


def list_health(session: Session) -> list[AgentHealth]:
    """Health of every registered agent, including agents with nothing recorded."""

    agent_ids = session.exec(
        select(Agent.agent_id).order_by(col(Agent.created_at).asc(), col(Agent.agent_id).asc()),
    ).all()
    return [snapshot(session, agent_id=agent_id) for agent_id in agent_ids]


def rolling_success_rate(session: Session, *, agent_id: str) -> float:
    outcomes = ledger.recent_outcomes(session, agent_id=agent_id, limit=ledger.ROLLING_WINDOW)
    if not outcomes:
        return 0.0
    successes = sum(1 for outcome in outcomes if outcome == AttemptOutcome.SUCCESS)
    return successes / len(outcomes)


def next_degraded_flag(
    *,
    current: bool,
    total_attempts: int,
    rolling_success_rate: float,
) -> bool:
    """Hysteresis: the 0.6..0.7 dead zone keeps the previous flag."""

    if total_attempts >= DEGRADE_MIN_ATTEMPTS and rolling_success_rate < DEGRADE_BELOW_RATIO:
        return True
    if rolling_success_rate > RECOVER_ABOVE_RATIO:
        return False
    return current


def _load_stats(session: Session, *, agent_id: str) -> AgentStats | None:
    return session.exec(
        select(AgentStats)
        .where(AgentStats.agent_id == agent_id)
        .execution_options(populate_existing=True),
    ).one_or_none()
