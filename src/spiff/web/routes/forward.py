"""Forward route. Lets the UI send any SpaceTraders request through the shared dispatcher."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from spiff.client import ApiResult
from spiff.scheduler import Priority
from spiff.web.app import get_client

router = APIRouter(prefix="/server", tags=["forward"])


class ForwardRequest(BaseModel):
    path: str
    query: dict[str, Any] | str | None = None
    method: str | None = None
    auth_token: str | None = None
    body: Any = None
    priority: int = Field(default=Priority.NORMAL, ge=0, le=Priority.BULK_LOAD.value)


@router.post("/forward")
async def forward(request: Request, params: ForwardRequest) -> ApiResult:
    """Dispatch the request and return its result, success or not."""
    client = get_client(request)
    return await client.dispatch(
        params.path,
        query=params.query,
        method=params.method,
        auth_token=params.auth_token,
        body=params.body,
        priority=params.priority,
    )
