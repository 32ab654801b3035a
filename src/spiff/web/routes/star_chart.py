"""Star chart routes: load status and queries against the local chart."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from spiff.star_chart import StarChartError
from spiff.web.app import fail, get_star_chart, ok

router = APIRouter(prefix="/server/star_chart", tags=["star_chart"])


class SystemWaypointsRequest(BaseModel):
    auth_token: str
    system_symbol: str


class SiblingWaypointsRequest(BaseModel):
    auth_token: str
    waypoint_symbol: str


class LocalSystemsRequest(BaseModel):
    min_x: int
    max_x: int
    min_y: int
    max_y: int


@router.post("/status")
async def status(request: Request) -> dict[str, Any]:
    """Bulk load status. Only the fields that apply are present."""
    return ok(get_star_chart(request).status().model_dump(exclude_none=True))


@router.post("/waypoints")
async def system_waypoints(request: Request, params: SystemWaypointsRequest) -> dict[str, Any]:
    try:
        result = await get_star_chart(request).get_system_waypoints(
            params.auth_token, params.system_symbol,
        )
    except StarChartError as e:
        return fail(str(e))
    return ok(result.model_dump())


@router.post("/sibling_waypoints")
async def sibling_waypoints(request: Request, params: SiblingWaypointsRequest) -> dict[str, Any]:
    try:
        result = await get_star_chart(request).get_sibling_waypoints(
            params.auth_token, params.waypoint_symbol,
        )
    except StarChartError as e:
        return fail(str(e))
    return ok(result.model_dump())


@router.post("/local_systems")
async def local_systems(request: Request, params: LocalSystemsRequest) -> dict[str, Any]:
    systems = await get_star_chart(request).get_local_systems(
        params.min_x, params.max_x, params.min_y, params.max_y,
    )
    return ok({symbol: system.model_dump() for symbol, system in systems.items()})
