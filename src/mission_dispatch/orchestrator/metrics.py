"""Operational reports over outcomes, attempts, and agent health."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime

from mission_dispatch.orchestrator.models import (
    AgentHealth,
    AttemptOutcome,
    AttemptView,
    OutcomeView,
)


@dataclass(slots=True)
class OpsOverview:
    """Headline numbers for the ops dashboard."""

    total_tasks: int
    total_outcomes: int
    success_rate: float
    avg_attempts_per_task: float
    retry_rate: float
    degraded_agents: int


@dataclass(slots=True)
class AgentHealthRow:
    agent_id: str
    name: str
    total_success: int
    total_failure: int
    total_attempts: int
    success_rate: float
    last_20_success_rate: float
    is_degraded: bool


@dataclass(slots=True)
class OutcomeRow:
    """One finalized task joined with its title and last agent name."""

    task_id: str
    task_title: str | None
    final_status: str
    attempts: int
    last_agent_id: str | None
    agent_name: str | None
    completed_at: datetime

    @property
    def retry_used(self) -> bool:
        return self.attempts > 1


def build_overview(*, outcomes: list[OutcomeView], health: list[AgentHealth]) -> OpsOverview:
    total = len(outcomes)
    successes = sum(1 for item in outcomes if item.final_status == AttemptOutcome.SUCCESS)
    retried = sum(1 for item in outcomes if item.attempts > 1)
    attempts_total = sum(item.attempts for item in outcomes)
    return OpsOverview(
        total_tasks=len({item.task_id for item in outcomes}),
        total_outcomes=total,
        success_rate=_ratio(successes, total),
        avg_attempts_per_task=_ratio(attempts_total, total),
        retry_rate=_ratio(retried, total),
        degraded_agents=sum(1 for item in health if item.is_degraded),
    )


def build_agent_health_rows(
    *,
    health: list[AgentHealth],
    agent_names: dict[str, str],
) -> list[AgentHealthRow]:
    """Health rows ordered by total successes, most first."""

    rows = [
        AgentHealthRow(
            agent_id=item.agent_id,
            name=agent_names.get(item.agent_id, item.agent_id),
            total_success=item.total_success,
            total_failure=item.total_failure,
            total_attempts=item.total_attempts,
            success_rate=item.success_rate,
            last_20_success_rate=item.last_20_success_rate,
            is_degraded=item.is_degraded,
        )
        for item in health
    ]
    return sorted(rows, key=lambda row: row.total_success, reverse=True)


def build_retry_distribution(outcomes: list[OutcomeView]) -> dict[str, int]:
    """Finalized tasks grouped by how many attempts they consumed."""

    counts = Counter(item.attempts for item in outcomes)
    distribution: dict[str, int] = {}
    for attempts in sorted(counts):
        distribution[_attempt_bucket(attempts)] = counts[attempts]
    return distribution


def build_outcome_rows(
    *,
    outcomes: list[OutcomeView],
    task_titles: dict[str, str],
    agent_names: dict[str, str],
) -> list[OutcomeRow]:
    return [
        OutcomeRow(
            task_id=item.task_id,
            task_title=task_titles.get(item.task_id),
            final_status=item.final_status.value,
            attempts=item.attempts,
            last_agent_id=item.last_agent_id,
            agent_name=agent_names.get(item.last_agent_id) if item.last_agent_id else None,
            completed_at=item.created_at,
        )
        for item in outcomes
    ]


def overview_payload(overview: OpsOverview) -> dict[str, float | int]:
    return {
        "total_tasks": overview.total_tasks,
        "total_outcomes": overview.total_outcomes,
        "success_rate": round(overview.success_rate, 2),
        "avg_attempts_per_task": round(overview.avg_attempts_per_task, 2),
        "retry_rate": round(overview.retry_rate, 2),
        "degraded_agents": overview.degraded_agents,
    }


def agent_health_payload(rows: list[AgentHealthRow]) -> list[dict[str, object]]:
    return [
        {
            "agent_id": row.agent_id,
            "name": row.name,
            "total_success": row.total_success,
            "total_failure": row.total_failure,
            "total_attempts": row.total_attempts,
            "success_rate": round(row.success_rate, 2),
            "last_20_success_rate": round(row.last_20_success_rate, 2),
            "is_degraded": row.is_degraded,
        }
        for row in rows
    ]


def outcome_payload(rows: list[OutcomeRow]) -> list[dict[str, object]]:
    return [
        {
            "task_id": row.task_id,
            "task_title": row.task_title,
            "final_status": row.final_status,
            "attempts": row.attempts,
            "last_agent_id": row.last_agent_id,
            "agent_name": row.agent_name,
            "retry_used": row.retry_used,
            "completed_at": row.completed_at.isoformat(),
        }
        for row in rows
    ]


def attempt_payload(attempts: list[AttemptView]) -> list[dict[str, object]]:
    return [
        {
            "attempt_number": attempt.attempt_number,
            "agent_id": attempt.agent_id,
            "auto_retry": attempt.auto_retry,
            "selection_score": attempt.selection_score,
            "outcome": attempt.outcome.value if attempt.outcome else None,
            "error": attempt.error,
            "duration": attempt.duration_seconds,
        }
        for attempt in attempts
    ]


def render_overview_lines(overview: OpsOverview) -> list[str]:
    return [
        "Ops overview:",
        f"  total_tasks={overview.total_tasks} total_outcomes={overview.total_outcomes}",
        f"  success_rate={_fmt_ratio(overview.success_rate)}",
        f"  avg_attempts_per_task={overview.avg_attempts_per_task:.2f}",
        f"  retry_rate={_fmt_ratio(overview.retry_rate)}",
        f"  degraded_agents={overview.degraded_agents}",
    ]


def render_agent_health_lines(rows: list[AgentHealthRow]) -> list[str]:
    if not rows:
        return ["No agents registered."]
    lines = ["Agent health:"]
    for row in rows:
        flag = " DEGRADED" if row.is_degraded else ""
        lines.append(
            f"- {row.name} ({row.agent_id}) success={row.total_success} "
            f"failure={row.total_failure} rate={_fmt_ratio(row.success_rate)} "
            f"last_20={_fmt_ratio(row.last_20_success_rate)}{flag}",
        )
    return lines


def render_retry_lines(distribution: dict[str, int]) -> list[str]:
    if not distribution:
        return ["No finalized tasks."]
    return [
        "Retry distribution:",
        *(f"  {bucket}={count}" for bucket, count in distribution.items()),
    ]


def render_outcome_lines(rows: list[OutcomeRow]) -> list[str]:
    if not rows:
        return ["No finalized tasks."]
    lines = ["Recent outcomes:"]
    for row in rows:
        retry = " retry_used" if row.retry_used else ""
        lines.append(
            f"- {row.completed_at.isoformat()} {row.final_status} "
            f"{row.task_title or row.task_id} attempts={row.attempts} "
            f"agent={row.agent_name or row.last_agent_id or '-'}{retry}",
        )
    return lines


def render_attempt_lines(attempts: list[AttemptView]) -> list[str]:
    if not attempts:
        return ["Attempts: none"]
    lines = ["Attempts:"]
    for attempt in attempts:
        duration = (
            f"{attempt.duration_seconds:.1f}s" if attempt.duration_seconds is not None else "open"
        )
        score = (
            f"{attempt.selection_score:.2f}" if attempt.selection_score is not None else "n/a"
        )
        outcome = attempt.outcome.value if attempt.outcome else "-"
        line = (
            f"  #{attempt.attempt_number} agent={attempt.agent_id} score={score} "
            f"retry={attempt.auto_retry} outcome={outcome} duration={duration}"
        )
        if attempt.error:
            line += f" error={attempt.error}"
        lines.append(line)
    return lines


def _attempt_bucket(attempts: int) -> str:
    if attempts == 1:
        return "single_attempt"
    if attempts == 2:  # noqa: PLR2004
        return "double_attempt"
    return f"{attempts}_attempts"


def _ratio(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"
