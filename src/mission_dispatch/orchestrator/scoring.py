"""Fitness score used to rank candidate agents."""

from __future__ import annotations

from mission_dispatch.orchestrator.models import AgentHealth

DEGRADATION_PENALTY = 0.2


def score(health: AgentHealth) -> float:
    """Cumulative success rate minus a fixed penalty for degraded agents.

    Agents with no recorded attempts score 0. The value is stamped onto the
    attempt at selection time and never recomputed afterwards.
    """

    penalty = DEGRADATION_PENALTY if health.is_degraded else 0.0
    return health.success_rate - penalty


def rank_candidates(
    candidates: list[str],
    health_by_agent: dict[str, AgentHealth],
) -> list[tuple[str, float]]:
    """Order agent ids by score, highest first; ties keep the input order."""

    scored = [
        (agent_id, score(health_by_agent.get(agent_id) or AgentHealth(agent_id=agent_id)))
        for agent_id in candidates
    ]
    return sorted(scored, key=lambda item: item[1], reverse=True)
