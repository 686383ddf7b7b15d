"""Client for the remote agent runtime gateway."""

from mission_dispatch.gateway.client import (
    AgentGatewayClient,
    Gateway,
    GatewayError,
    RuntimeAgent,
    list_runtime_agents,
)

__all__ = ["AgentGatewayClient", "Gateway", "GatewayError", "RuntimeAgent", "list_runtime_agents"]
