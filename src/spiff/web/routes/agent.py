"""Agent routes: add, list, select and remove agents, and the server reset behavior."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from spiff.agent import AgentError, ServerResetBehavior
from spiff.web.app import fail, get_agents, ok

router = APIRouter(prefix="/server/agent", tags=["agent"])


class AddAgentRequest(BaseModel):
    auth_token: str


class SelectAgentRequest(BaseModel):
    id: int | None = None


class RemoveAgentRequest(BaseModel):
    id: int


class ServerResetBehaviorRequest(BaseModel):
    behavior: ServerResetBehavior


def _agent_error(exc: AgentError) -> dict[str, Any]:
    response = fail(exc.message)
    if exc.result is not None:
        response["st_response"] = exc.result.model_dump(mode="json")
    return response


@router.post("/add")
async def add_agent(request: Request, params: AddAgentRequest) -> dict[str, Any]:
    try:
        added = await get_agents(request).add_agent(params.auth_token)
    except AgentError as e:
        return _agent_error(e)
    return ok({"id": added.id, "selected": added.selected})


@router.post("/get_all")
async def get_all_agents(request: Request) -> dict[str, Any]:
    listing = await get_agents(request).get_agents()
    return ok({
        "agents": [
            {
                "id": agent.id,
                "call_sign": agent.call_sign,
                "faction": agent.faction,
                "auth_token": agent.auth_token,
                "server_reset_id": agent.server_reset_id,
            }
            for agent in listing.agents
        ],
        "selected": listing.selected,
    })


@router.post("/select")
async def select_agent(request: Request, params: SelectAgentRequest) -> dict[str, Any]:
    """Select an agent; `{"id": null}` clears the selection."""
    try:
        await get_agents(request).select_agent(params.id)
    except AgentError as e:
        return _agent_error(e)
    return ok()


@router.post("/remove")
async def remove_agent(request: Request, params: RemoveAgentRequest) -> dict[str, Any]:
    try:
        await get_agents(request).remove_agent(params.id)
    except AgentError as e:
        return _agent_error(e)
    return ok()


@router.post("/get_server_reset_behavior")
async def get_server_reset_behavior(request: Request) -> dict[str, Any]:
    behavior = await get_agents(request).get_server_reset_behavior()
    return ok(behavior.value)


@router.post("/set_server_reset_behavior")
async def set_server_reset_behavior(
    request: Request, params: ServerResetBehaviorRequest,
) -> dict[str, Any]:
    await get_agents(request).set_server_reset_behavior(params.behavior)
    return ok()
