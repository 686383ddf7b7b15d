"""Outbound task message sent to an agent session."""

from __future__ import annotations

import re

from mission_dispatch.orchestrator.models import TaskPriority
from mission_dispatch.storage.sqlmodel_models import Agent, Task

PRIORITY_MARKERS = {
    TaskPriority.LOW.value: "🔵",
    TaskPriority.NORMAL.value: "⚪",
    TaskPriority.HIGH.value: "🟡",
    TaskPriority.URGENT.value: "🔴",
}


def project_dir_name(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


def build_agent_context(agent: Agent) -> str:
    """Standing behavioral documents attached to the agent, in a fixed order."""

    sections = (
        ("AGENT SOUL", agent.soul_md),
        ("USER CONTEXT", agent.user_md),
        ("AGENTS DIRECTORY", agent.agents_md),
    )
    return "".join(f"--- {label} ---\n{body}\n\n" for label, body in sections if body)


def build_task_message(
    *,
    task: Task,
    agent: Agent,
    projects_path: str,
    console_url: str,
) -> str:
    marker = PRIORITY_MARKERS.get(task.priority, PRIORITY_MARKERS[TaskPriority.NORMAL.value])
    task_dir = f"{projects_path.rstrip('/')}/{project_dir_name(task.title)}"
    base_url = console_url.rstrip("/")

    lines = [
        f"{marker} **NEW TASK ASSIGNED**",
        "",
        f"**Title:** {task.title}",
    ]
    if task.description:
        lines.append(f"**Description:** {task.description}")
    lines.append(f"**Priority:** {task.priority.upper()}")
    if task.due_date:
        lines.append(f"**Due:** {task.due_date}")
    lines.extend(
        [
            f"**Task ID:** {task.task_id}",
            "",
            f"**OUTPUT DIRECTORY:** {task_dir}",
            "Create this directory and save all deliverables there.",
            "",
            f"**Task board:** {base_url}",
            "",
            "When complete, reply in this session with:",
            "`TASK_COMPLETE: [brief summary of what you did]`",
        ],
    )
    return build_agent_context(agent) + "\n".join(lines)
