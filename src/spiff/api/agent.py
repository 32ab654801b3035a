"""Agent API operations."""

from __future__ import annotations

from spiff.client import ApiClient, ApiResult


async def get_agent_details(client: ApiClient, auth_token: str) -> ApiResult:
    """Fetch the agent that owns `auth_token`."""
    return await client.dispatch("my/agent", auth_token=auth_token)


async def register_agent(client: ApiClient, call_sign: str, faction: str) -> ApiResult:
    """Register a new agent. The payload carries the agent and its token."""
    return await client.dispatch("register", body={"symbol": call_sign, "faction": faction})
