"""System and waypoint listing API operations."""

from __future__ import annotations

from spiff.client import ApiClient, ApiResult
from spiff.scheduler import Priority

# Largest `limit` the paginated list endpoints accept.
MAX_PAGE_SIZE = 20


async def get_systems(
    client: ApiClient,
    auth_token: str,
    page: int,
    *,
    limit: int = MAX_PAGE_SIZE,
    priority: int = Priority.BULK_LOAD,
) -> ApiResult:
    """Fetch one page of the galaxy's systems."""
    return await client.dispatch(
        "systems",
        query={"page": page, "limit": limit},
        auth_token=auth_token,
        priority=priority,
    )


async def get_waypoints(
    client: ApiClient,
    auth_token: str,
    system_symbol: str,
    page: int,
    *,
    limit: int = MAX_PAGE_SIZE,
    priority: int = Priority.NORMAL,
) -> ApiResult:
    """Fetch one page of the waypoints in a system."""
    return await client.dispatch(
        f"systems/{system_symbol}/waypoints",
        query={"page": page, "limit": limit},
        auth_token=auth_token,
        priority=priority,
    )
