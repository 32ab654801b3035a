"""Server status API operations."""

from __future__ import annotations

from spiff.client import ApiClient, ApiResult


async def get_status(client: ApiClient) -> ApiResult:
    """Fetch server metadata (reset dates, version) from the API root."""
    return await client.dispatch("")
