"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from mission_dispatch.gateway.client import GatewayError
from mission_dispatch.orchestrator.dispatch import DispatchEngine
from mission_dispatch.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    AgentView,
    RetryRequested,
    TaskCreate,
    TaskPriority,
    TaskView,
)
from mission_dispatch.orchestrator.repository import OrchestratorRepository
from mission_dispatch.storage.common import to_db_datetime, utc_now
from mission_dispatch.storage.sqlmodel_models import AgentStats


class FakeGateway:
    """In-memory stand-in for the agent runtime gateway."""

    def __init__(self) -> None:
        self.connected = False
        self.fail_connect = False
        self.fail_send = False
        self.remote_agents: list[dict[str, Any]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def connect(self) -> None:
        if self.fail_connect:
            raise GatewayError("connection refused")
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    def call(self, method: str, params: dict[str, Any]) -> Any:
        if method == "chat.send" and self.fail_send:
            raise GatewayError("Gateway call timed out: chat.send")
        with self._lock:
            self.calls.append((method, params))
        if method == "agents.list":
            return {"agents": self.remote_agents}
        return {"ok": True}

    def disconnect(self) -> None:
        self.connected = False

    @property
    def sent(self) -> list[dict[str, Any]]:
        return [params for method, params in self.calls if method == "chat.send"]


class RecordingPublisher:
    def __init__(self) -> None:
        self.intents: list[RetryRequested] = []

    def publish(self, intent: RetryRequested) -> None:
        self.intents.append(intent)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "dispatch.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def engine(repository: OrchestratorRepository, gateway: FakeGateway) -> DispatchEngine:
    return DispatchEngine(
        repository=repository,
        gateway=gateway,
        projects_path="~/projects",
        console_url="http://localhost:3000",
    )


@pytest.fixture()
def make_agent(repository: OrchestratorRepository) -> Callable[..., AgentView]:
    def _make(
        name: str,
        *,
        status: AgentStatus = AgentStatus.STANDBY,
        runtime_name: str = "main",
        soul_md: str | None = None,
    ) -> AgentView:
        return repository.create_agent(
            AgentCreate(name=name, status=status, runtime_name=runtime_name, soul_md=soul_md),
        )

    return _make


@pytest.fixture()
def make_task(repository: OrchestratorRepository) -> Callable[..., TaskView]:
    def _make(
        title: str = "Build landing page",
        *,
        agent_id: str | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        description: str | None = None,
    ) -> TaskView:
        return repository.create_task(
            TaskCreate(
                title=title,
                description=description,
                priority=priority,
                assigned_agent_id=agent_id,
            ),
        )

    return _make


@pytest.fixture()
def seed_stats(repository: OrchestratorRepository) -> Callable[..., None]:
    """Write health counters directly, bypassing the attempt ledger."""

    def _seed(agent_id: str, *, success: int, failure: int, degraded: bool = False) -> None:
        with repository.transaction() as session:
            session.add(
                AgentStats(
                    agent_id=agent_id,
                    total_success=success,
                    total_failure=failure,
                    is_degraded=degraded,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )

    return _seed
