"""Controllers for dispatch console CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from mission_dispatch.config import Settings
from mission_dispatch.gateway.client import AgentGatewayClient, Gateway, list_runtime_agents
from mission_dispatch.orchestrator.completion import CompletionHandler
from mission_dispatch.orchestrator.dispatch import DispatchEngine
from mission_dispatch.orchestrator.errors import NotFoundError
from mission_dispatch.orchestrator.metrics import (
    agent_health_payload,
    attempt_payload,
    build_agent_health_rows,
    build_outcome_rows,
    build_overview,
    build_retry_distribution,
    outcome_payload,
    overview_payload,
    render_agent_health_lines,
    render_attempt_lines,
    render_outcome_lines,
    render_overview_lines,
    render_retry_lines,
)
from mission_dispatch.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    TaskCreate,
    TaskPriority,
    TaskStatus,
)
from mission_dispatch.orchestrator.repository import OrchestratorRepository
from mission_dispatch.orchestrator.retry_queue import RetryDispatcher
from mission_dispatch.orchestrator.signals import build_signal

GatewayFactory = Callable[[Settings], Gateway]


@dataclass(slots=True)
class AgentAddCommand:
    """CLI input for agent registration."""

    db_path: Path | None
    name: str
    runtime_name: str
    soul_path: Path | None = None
    user_path: Path | None = None
    agents_path: Path | None = None


@dataclass(slots=True)
class AgentStatusCommand:
    db_path: Path | None
    agent_id: str
    status: str


@dataclass(slots=True)
class AgentHealthCommand:
    db_path: Path | None
    agent_id: str
    output_format: str = "table"


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    description: str | None
    priority: str
    agent_id: str | None
    due_date: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskAssignCommand:
    db_path: Path | None
    task_id: str
    agent_id: str


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str
    output_format: str = "table"


@dataclass(slots=True)
class DispatchCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CompleteCommand:
    """CLI input for one completion signal."""

    db_path: Path | None
    task_id: str | None
    session_id: str | None
    message: str | None
    outcome: str | None
    error: str | None
    summary: str | None


@dataclass(slots=True)
class OpsCommand:
    """CLI input shared by ops reports."""

    db_path: Path | None
    output_format: str = "table"
    limit: int = 50


class AgentCliController:
    """Agent registry and health commands."""

    def __init__(self, *, gateway_factory: GatewayFactory | None = None) -> None:
        self.gateway_factory = gateway_factory or _default_gateway

    def add(self, command: AgentAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agent = repository.create_agent(
                AgentCreate(
                    name=command.name,
                    runtime_name=command.runtime_name,
                    soul_md=_read_optional(command.soul_path),
                    user_md=_read_optional(command.user_path),
                    agents_md=_read_optional(command.agents_path),
                ),
            )
        return [
            f"Agent registered: agent_id={agent.agent_id} name={agent.name} "
            f"runtime={agent.runtime_name} status={agent.status.value}",
        ]

    def list_agents(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings) as repository:
            agents = repository.list_agents()
        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} name={agent.name} status={agent.status.value} "
                f"runtime={agent.runtime_name}",
            )
        return lines

    def set_status(self, command: AgentStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = AgentStatus(command.status.strip().lower())
        with _repository(settings) as repository:
            agent = repository.set_agent_status(command.agent_id, status)
        return [f"Agent {agent.agent_id} status={agent.status.value}"]

    def health(self, command: AgentHealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            health = repository.get_agent_health(command.agent_id)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "total_success": health.total_success,
                        "total_failure": health.total_failure,
                        "success_rate": health.success_rate,
                        "last_20_success_rate": health.last_20_success_rate,
                        "is_degraded": health.is_degraded,
                    },
                    indent=2,
                ),
            ]
        return [
            f"Agent: {health.agent_id}",
            f"Success: {health.total_success}",
            f"Failure: {health.total_failure}",
            f"Success rate: {health.success_rate:.2%}",
            f"Last 20 success rate: {health.last_20_success_rate:.2%}",
            f"Degraded: {'yes' if health.is_degraded else 'no'}",
        ]

    def remote(self, db_path: Path | None) -> list[str]:
        """List agent identities known to the remote runtime."""

        settings = Settings.from_env(db_path=db_path)
        settings.validate()
        gateway = self.gateway_factory(settings)
        try:
            if not gateway.is_connected():
                gateway.connect()
            remote_agents = list_runtime_agents(gateway)
        finally:
            gateway.disconnect()
        lines = [f"Remote agents: {len(remote_agents)}"]
        for remote_agent in remote_agents:
            default = " default" if remote_agent.is_default else ""
            lines.append(
                f"  {remote_agent.id} name={remote_agent.display_name or '-'} "
                f"model={remote_agent.model or '-'}{default}",
            )
        return lines


class TaskCliController:
    """Task board commands."""

    def add(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    priority=TaskPriority(command.priority.strip().lower()),
                    assigned_agent_id=command.agent_id,
                    due_date=command.due_date,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} status={task.status.value} "
            f"priority={task.priority.value} agent={task.assigned_agent_id or '-'}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} priority={task.priority.value} "
                f"agent={task.assigned_agent_id or '-'} title={task.title}",
            )
        return lines

    def assign(self, command: TaskAssignCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.assign_task(command.task_id, command.agent_id)
        return [f"Task {task.task_id} assigned to {command.agent_id} status={task.status.value}"]

    def inspect(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {command.task_id}")
            attempts = repository.list_attempts(command.task_id)
            outcome = repository.get_outcome(command.task_id)
            events = repository.list_events(task_id=command.task_id, limit=20)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "task_id": task.task_id,
                        "status": task.status.value,
                        "attempts": attempt_payload(attempts),
                        "outcome": (
                            {
                                "final_status": outcome.final_status.value,
                                "attempts": outcome.attempts,
                                "last_agent_id": outcome.last_agent_id,
                            }
                            if outcome is not None
                            else None
                        ),
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Assigned agent: {task.assigned_agent_id or '-'}",
            (
                f"Outcome: {outcome.final_status.value} attempts={outcome.attempts} "
                f"last_agent={outcome.last_agent_id or '-'}"
                if outcome is not None
                else "Outcome: -"
            ),
        ]
        lines.extend(render_attempt_lines(attempts))
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(f"  {event.created_at.isoformat()} {event.event_type} {event.message}")
        return lines


class DispatchCliController:
    """Dispatch and completion commands; both talk to the agent runtime gateway."""

    def __init__(self, *, gateway_factory: GatewayFactory | None = None) -> None:
        self.gateway_factory = gateway_factory or _default_gateway

    def dispatch(self, command: DispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository, self._gateway(settings) as gateway:
            result = _engine(repository, gateway, settings).dispatch(command.task_id)
        return [
            f"Task dispatched: task_id={result.task_id} agent={result.agent_id} "
            f"attempt={result.attempt_number} score={result.selection_score:.2f}"
            + (" reassigned" if result.reassigned else ""),
            f"Session: {result.session_key}",
        ]

    def complete(self, command: CompleteCommand) -> list[str]:
        """Record a completion; a due retry is dispatched before returning."""

        signal = build_signal(
            task_id=command.task_id,
            session_key=command.session_id,
            message=command.message,
            outcome=command.outcome,
            error=command.error,
            summary=command.summary,
        )
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository, self._gateway(settings) as gateway:
            retries = RetryDispatcher(_engine(repository, gateway, settings))
            result = CompletionHandler(repository, retry_publisher=retries).handle(signal)
            retried = retries.drain()

        outcome = result.outcome.value if result.outcome is not None else "-"
        if result.idempotent:
            return [
                f"Completion already recorded: task_id={result.task_id} "
                f"agent={result.agent_id} outcome={outcome}",
            ]
        lines = [
            f"Completion recorded: task_id={result.task_id} agent={result.agent_id} "
            f"outcome={outcome} attempts={result.attempts}",
            f"Summary: {result.summary}",
        ]
        if result.new_status is not None:
            lines.append(f"Final status: {result.new_status.value}")
        if result.should_retry:
            if retried:
                lines.append(
                    f"Retry dispatched: agent={retried[0].agent_id} "
                    f"attempt={retried[0].attempt_number}",
                )
            else:
                lines.append("Retry requested; dispatch did not go through (see logs).")
        return lines

    @contextmanager
    def _gateway(self, settings: Settings) -> Iterator[Gateway]:
        gateway = self.gateway_factory(settings)
        try:
            yield gateway
        finally:
            gateway.disconnect()


class OpsCliController:
    """Read-only operational reports."""

    def overview(self, command: OpsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            overview = build_overview(
                outcomes=repository.list_outcomes(),
                health=repository.list_agent_health(),
            )
        if command.output_format == "json":
            return [json.dumps(overview_payload(overview), indent=2)]
        return render_overview_lines(overview)

    def agents(self, command: OpsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            rows = build_agent_health_rows(
                health=repository.list_agent_health(),
                agent_names={agent.agent_id: agent.name for agent in repository.list_agents()},
            )
        if command.output_format == "json":
            return [json.dumps(agent_health_payload(rows), indent=2, ensure_ascii=False)]
        return render_agent_health_lines(rows)

    def retries(self, command: OpsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            distribution = build_retry_distribution(repository.list_outcomes())
        if command.output_format == "json":
            return [json.dumps(distribution, indent=2)]
        return render_retry_lines(distribution)

    def outcomes(self, command: OpsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            outcomes = repository.list_outcomes(limit=command.limit)
            titles = {}
            for outcome in outcomes:
                task = repository.get_task(outcome.task_id)
                if task is not None:
                    titles[task.task_id] = task.title
            rows = build_outcome_rows(
                outcomes=outcomes,
                task_titles=titles,
                agent_names={agent.agent_id: agent.name for agent in repository.list_agents()},
            )
        if command.output_format == "json":
            return [json.dumps(outcome_payload(rows), indent=2, ensure_ascii=False)]
        return render_outcome_lines(rows)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _read_optional(path: Path | None) -> str | None:
    if path is None:
        return None
    return path.read_text("utf-8")


def _default_gateway(settings: Settings) -> Gateway:
    return AgentGatewayClient(
        base_url=settings.gateway.url,
        token=settings.gateway.token,
        connect_timeout_seconds=settings.gateway.connect_timeout_seconds,
        call_timeout_seconds=settings.gateway.call_timeout_seconds,
    )


def _engine(
    repository: OrchestratorRepository,
    gateway: Gateway,
    settings: Settings,
) -> DispatchEngine:
    return DispatchEngine(
        repository=repository,
        gateway=gateway,
        projects_path=settings.console.projects_path,
        console_url=settings.console.console_url,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
