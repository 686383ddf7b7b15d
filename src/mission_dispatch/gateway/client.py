"""HTTP client for the agent runtime gateway with bounded timeouts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0


class GatewayError(RuntimeError):
    """Gateway unreachable, timed out, or returned an error payload."""


@dataclass(slots=True)
class RuntimeAgent:
    """Remote agent identity as reported by the runtime."""

    id: str
    display_name: str | None
    model: str | None
    is_default: bool = False


class Gateway(Protocol):
    """Operations the dispatch engine needs from the runtime gateway."""

    def connect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def call(self, method: str, params: dict[str, Any]) -> Any: ...

    def disconnect(self) -> None: ...


class AgentGatewayClient:
    """JSON-over-HTTP RPC client: ``POST {base_url}/rpc`` with ``{method, params}``."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = httpx.Timeout(call_timeout_seconds, connect=connect_timeout_seconds)
        self._transport = transport
        self._client: httpx.Client | None = None

    def connect(self) -> None:
        """Open the HTTP session and verify the gateway answers a ping."""

        if self._client is not None:
            return
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        client = httpx.Client(
            base_url=self.base_url,
            timeout=self._timeout,
            headers=headers,
            transport=self._transport,
        )
        try:
            response = client.get("/health")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            client.close()
            logger.warning("Failed to connect to agent gateway %s: %s", self.base_url, exc)
            raise GatewayError(f"Failed to connect to agent gateway: {exc}") from exc
        self._client = client

    def is_connected(self) -> bool:
        return self._client is not None

    def call(self, method: str, params: dict[str, Any]) -> Any:
        """Invoke one RPC method and return its ``result`` member."""

        if self._client is None:
            raise GatewayError("Agent gateway is not connected")
        try:
            response = self._client.post("/rpc", json={"method": method, "params": params})
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling gateway method %s", method)
            raise GatewayError(f"Gateway call timed out: {method}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling gateway method %s: %s", method, exc)
            raise GatewayError(f"Gateway call failed: {method}: {exc}") from exc

        if not response.is_success:
            raise GatewayError(f"Gateway call failed: {method}: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(f"Gateway returned invalid JSON for {method}") from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise GatewayError(f"Gateway error for {method}: {payload['error']}")
        return payload.get("result") if isinstance(payload, dict) else payload

    def disconnect(self) -> None:
        if self._client is None:
            return
        self._client.close()
        self._client = None

    def __enter__(self) -> AgentGatewayClient:
        self.connect()
        return self

    def __exit__(self, *_: object) -> None:
        self.disconnect()


def list_runtime_agents(gateway: Gateway) -> list[RuntimeAgent]:
    """Remote agent identities reported by the runtime (`agents.list`)."""

    result = gateway.call("agents.list", {})
    raw_agents = result.get("agents") if isinstance(result, dict) else None
    agents: list[RuntimeAgent] = []
    for raw in raw_agents or []:
        if not isinstance(raw, dict) or "id" not in raw:
            continue
        agents.append(
            RuntimeAgent(
                id=str(raw["id"]),
                display_name=raw.get("identityName") or raw.get("name"),
                model=raw.get("model"),
                is_default=bool(raw.get("isDefault", False)),
            ),
        )
    return agents
