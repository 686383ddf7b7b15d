"""CLI entrypoint for mission-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from mission_dispatch import __version__
from mission_dispatch.config import Settings
from mission_dispatch.gateway.client import GatewayError
from mission_dispatch.orchestrator.controllers import (
    AgentAddCommand,
    AgentCliController,
    AgentHealthCommand,
    AgentStatusCommand,
    CompleteCommand,
    DispatchCliController,
    DispatchCommand,
    OpsCliController,
    OpsCommand,
    TaskAddCommand,
    TaskAssignCommand,
    TaskCliController,
    TaskInspectCommand,
    TaskListCommand,
)
from mission_dispatch.orchestrator.errors import OrchestratorError
from mission_dispatch.orchestrator.models import AgentStatus, TaskPriority, TaskStatus

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()
TASK_CONTROLLER = TaskCliController()
DISPATCH_CONTROLLER = DispatchCliController()
OPS_CONTROLLER = OpsCliController()

_DB_PATH_HELP = "SQLite DB path."
_FORMAT_CHOICE = click.Choice(["table", "json"], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="mission-dispatch")
def mission_dispatch() -> None:
    """Dispatch tasks to agents, record completions, retry failures."""

    try:
        level = Settings.from_env().log_level
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=level if isinstance(logging.getLevelName(level), int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@mission_dispatch.group()
def agents() -> None:
    """Agent registry commands."""


@agents.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", required=True, help="Agent display name.")
@click.option(
    "--runtime-name",
    default="main",
    show_default=True,
    help="Agent name in the remote runtime.",
)
@click.option(
    "--soul-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Markdown file with the agent's soul document.",
)
@click.option(
    "--user-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Markdown file with user context.",
)
@click.option(
    "--agents-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Markdown file with the team directory.",
)
def agents_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    runtime_name: str,
    soul_file: Path | None,
    user_file: Path | None,
    agents_file: Path | None,
) -> None:
    """Register an agent."""

    _run(
        lambda: AGENT_CONTROLLER.add(
            AgentAddCommand(
                db_path=db_path,
                name=name,
                runtime_name=runtime_name,
                soul_path=soul_file,
                user_path=user_file,
                agents_path=agents_file,
            ),
        ),
    )


@agents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def agents_list(db_path: Path | None) -> None:
    """List registered agents."""

    _run(lambda: AGENT_CONTROLLER.list_agents(db_path))


@agents.command("set-status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("agent_id")
@click.argument(
    "status",
    type=click.Choice([status.value for status in AgentStatus], case_sensitive=False),
)
def agents_set_status(db_path: Path | None, agent_id: str, status: str) -> None:
    """Set an agent's lifecycle status (for example take it offline)."""

    _run(
        lambda: AGENT_CONTROLLER.set_status(
            AgentStatusCommand(db_path=db_path, agent_id=agent_id, status=status),
        ),
    )


@agents.command("health")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
@click.argument("agent_id")
def agents_health(db_path: Path | None, output_format: str, agent_id: str) -> None:
    """Show success counters, rolling-20 rate and the degraded flag of one agent."""

    _run(
        lambda: AGENT_CONTROLLER.health(
            AgentHealthCommand(
                db_path=db_path,
                agent_id=agent_id,
                output_format=output_format.lower(),
            ),
        ),
    )


@agents.command("remote")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def agents_remote(db_path: Path | None) -> None:
    """List agent identities known to the remote runtime gateway."""

    _run(lambda: AGENT_CONTROLLER.remote(db_path))


@mission_dispatch.group()
def tasks() -> None:
    """Task board commands."""


@tasks.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in TaskPriority], case_sensitive=False),
    default=TaskPriority.NORMAL.value,
    show_default=True,
)
@click.option("--agent-id", default=None, help="Assign the task to this agent.")
@click.option("--due-date", default=None, help="Free-form due date shown to the agent.")
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str | None,
    priority: str,
    agent_id: str | None,
    due_date: str | None,
) -> None:
    """Create a task, optionally assigned to an agent."""

    _run(
        lambda: TASK_CONTROLLER.add(
            TaskAddCommand(
                db_path=db_path,
                title=title,
                description=description,
                priority=priority,
                agent_id=agent_id,
                due_date=due_date,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks, most recently updated first."""

    _run(
        lambda: TASK_CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("assign")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
@click.argument("agent_id")
def tasks_assign(db_path: Path | None, task_id: str, agent_id: str) -> None:
    """Assign a task to an agent."""

    _run(
        lambda: TASK_CONTROLLER.assign(
            TaskAssignCommand(db_path=db_path, task_id=task_id, agent_id=agent_id),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, output_format: str, task_id: str) -> None:
    """Show a task with its attempts, outcome and recent events."""

    _run(
        lambda: TASK_CONTROLLER.inspect(
            TaskInspectCommand(
                db_path=db_path,
                task_id=task_id,
                output_format=output_format.lower(),
            ),
        ),
    )


@mission_dispatch.command("dispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def dispatch(db_path: Path | None, task_id: str) -> None:
    """Dispatch the next attempt of a task to the best available agent."""

    _run(lambda: DISPATCH_CONTROLLER.dispatch(DispatchCommand(db_path=db_path, task_id=task_id)))


@mission_dispatch.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", default=None, help="Completed task id.")
@click.option("--session-id", default=None, help="Delivery session key of the reporting agent.")
@click.option(
    "--message",
    default=None,
    help="Agent transcript containing `TASK_COMPLETE: <summary>`.",
)
@click.option("--outcome", default=None, help="`success` or anything else for a failure.")
@click.option("--error", default=None, help="Error text recorded on a failed attempt.")
@click.option("--summary", default=None, help="Summary used with --task-id.")
def complete(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str | None,
    session_id: str | None,
    message: str | None,
    outcome: str | None,
    error: str | None,
    summary: str | None,
) -> None:
    """Record a completion signal; a failed first attempt is retried right away."""

    _run(
        lambda: DISPATCH_CONTROLLER.complete(
            CompleteCommand(
                db_path=db_path,
                task_id=task_id,
                session_id=session_id,
                message=message,
                outcome=outcome,
                error=error,
                summary=summary,
            ),
        ),
    )


@mission_dispatch.group()
def ops() -> None:
    """Operational reports."""


@ops.command("overview")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def ops_overview(db_path: Path | None, output_format: str) -> None:
    """Outcome totals, success and retry rates, degraded agents."""

    _run(
        lambda: OPS_CONTROLLER.overview(
            OpsCommand(db_path=db_path, output_format=output_format.lower()),
        ),
    )


@ops.command("agents")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def ops_agents(db_path: Path | None, output_format: str) -> None:
    """Health table for all agents."""

    _run(
        lambda: OPS_CONTROLLER.agents(
            OpsCommand(db_path=db_path, output_format=output_format.lower()),
        ),
    )


@ops.command("retries")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def ops_retries(db_path: Path | None, output_format: str) -> None:
    """Finalized tasks grouped by attempts used."""

    _run(
        lambda: OPS_CONTROLLER.retries(
            OpsCommand(db_path=db_path, output_format=output_format.lower()),
        ),
    )


@ops.command("outcomes")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def ops_outcomes(db_path: Path | None, output_format: str, limit: int) -> None:
    """Most recent finalized tasks."""

    _run(
        lambda: OPS_CONTROLLER.outcomes(
            OpsCommand(db_path=db_path, output_format=output_format.lower(), limit=limit),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except OrchestratorError as error:
        raise click.ClickException(f"[{error.kind.value}] {error.message}") from error
    except GatewayError as error:
        raise click.ClickException(f"[gateway] {error}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mission_dispatch()
