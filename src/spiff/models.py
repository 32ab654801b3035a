"""Pydantic models for SpaceTraders payloads and local star chart results."""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


# --- Response envelope ---


class Meta(BaseModel):
    total: int
    page: int = 1
    limit: int = 1


class ApiResponse(BaseModel, Generic[T]):
    """Single-item API response wrapper."""

    data: T


class PaginatedResponse(BaseModel, Generic[T]):
    """Paginated list API response wrapper."""

    data: list[T]
    meta: Meta


# --- Server status (GET /) ---


class ServerResets(BaseModel):
    next: datetime | None = None
    frequency: str | None = None


class ServerStatus(BaseModel):
    status: str = ""
    version: str = ""
    reset_date: str = Field(alias="resetDate")
    server_resets: ServerResets = Field(default_factory=ServerResets, alias="serverResets")


# --- Agent ---


class Agent(BaseModel):
    symbol: str
    starting_faction: str = Field(alias="startingFaction")
    headquarters: str = ""
    credits: int = 0


class Registration(BaseModel):
    agent: Agent
    token: str


# --- Systems and waypoints ---


class System(BaseModel):
    symbol: str
    sector_symbol: str = Field(alias="sectorSymbol")
    type: str
    x: int
    y: int


class WaypointTrait(BaseModel):
    symbol: str
    name: str
    description: str = ""


class WaypointOrbital(BaseModel):
    symbol: str


class Waypoint(BaseModel):
    symbol: str
    type: str
    system_symbol: str = Field(alias="systemSymbol")
    x: int
    y: int
    orbitals: list[WaypointOrbital] = Field(default_factory=list)
    orbits: str | None = None
    traits: list[WaypointTrait] = Field(default_factory=list)


# --- Local star chart ---


class Position(BaseModel):
    x: int
    y: int


class SymbolRef(BaseModel):
    """A lookup-table row: database id plus natural key."""

    id: int
    symbol: str


class ChartSystem(BaseModel):
    id: int
    symbol: str
    position: Position
    sector: SymbolRef | None = None
    type: SymbolRef | None = None


class ChartWaypoint(BaseModel):
    id: int
    symbol: str
    type: SymbolRef
    traits: list[WaypointTrait] = Field(default_factory=list)
    orbits: str | None = None
    orbitals: list[str] = Field(default_factory=list)


class SystemWaypoints(BaseModel):
    system: ChartSystem
    waypoints: dict[str, ChartWaypoint]


class LoadStatus(BaseModel):
    """Snapshot of the bulk star chart load for newly connected clients."""

    error_message: str | None = None
    initialized: bool | None = None
    total_pages_needed: int | None = None
    pages_loaded: int | None = None
    system_count: int | None = None
    system_waypoints_loaded: int | None = None
