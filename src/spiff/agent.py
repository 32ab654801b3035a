"""Agent store: which agents the user has added and which one is selected.

Selection changes notify listeners before the change is considered done. The
listeners run inside the same database transaction as the change, so a
listener that raises rolls the change back and the error reaches whoever asked
for it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError

from spiff.api import agent as agent_api
from spiff.client import ApiClient, ApiResult
from spiff.db import Database, MetaInt, Transaction
from spiff.models import Agent, ApiResponse, Registration
from spiff.server_reset import ResetComplete, ServerResetTracker

logger = logging.getLogger(__name__)

AGENT_DB_VERSION = 1


class ServerResetBehavior(str, Enum):
    """What to do with agents created before the most recent server reset."""

    IGNORE = "ignore"
    REMOVE = "remove"
    RECREATE = "recreate"


# Stored integer for each behavior is its index here. Append only.
_BEHAVIOR_STORAGE_ORDER: tuple[ServerResetBehavior, ...] = (
    ServerResetBehavior.IGNORE,
    ServerResetBehavior.REMOVE,
    ServerResetBehavior.RECREATE,
)
BEHAVIOR_TO_INT: dict[ServerResetBehavior, int] = {
    behavior: i for i, behavior in enumerate(_BEHAVIOR_STORAGE_ORDER)
}
INT_TO_BEHAVIOR: dict[int, ServerResetBehavior] = dict(enumerate(_BEHAVIOR_STORAGE_ORDER))
DEFAULT_SERVER_RESET_BEHAVIOR = ServerResetBehavior.IGNORE


class AgentTag(Enum):
    """Tags in `tagged_agents`. Values are the stored tag ids."""

    SELECTED_AGENT = 1


class AgentError(Exception):
    """Raised when an agent operation can't be carried out."""

    def __init__(self, message: str, result: ApiResult | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.result = result


@dataclass(frozen=True)
class AgentRecord:
    id: int
    call_sign: str
    faction: str
    auth_token: str = field(repr=False)
    server_reset_id: int


@dataclass(frozen=True)
class AddedAgent:
    id: int
    selected: bool


@dataclass(frozen=True)
class AgentList:
    agents: list[AgentRecord]
    selected: int | None


SelectionListener = Callable[[AgentRecord | None, Transaction | None], Awaitable[None]]

_SELECT_AGENT = """
    SELECT agents.id AS id, agents.call_sign AS call_sign, agents.faction AS faction,
           agents.auth_token AS auth_token, agents.server_reset_id AS server_reset_id
    FROM agents
"""


def _record(row) -> AgentRecord:
    return AgentRecord(
        id=row["id"],
        call_sign=row["call_sign"],
        faction=row["faction"],
        auth_token=row["auth_token"],
        server_reset_id=row["server_reset_id"],
    )


class AgentStore:
    """Persists agents and the current selection."""

    def __init__(self, db: Database, client: ApiClient, server_reset: ServerResetTracker) -> None:
        self._db = db
        self._client = client
        self._server_reset = server_reset
        self._selection_listeners: list[SelectionListener] = []

    async def init(self) -> None:
        async def _init(tx: Transaction) -> None:
            version = await self._db.module_version(
                MetaInt.AGENT_MODULE_VERSION, AGENT_DB_VERSION, tx=tx,
            )
            if version < AGENT_DB_VERSION:
                if version < 1:
                    tx.execute("""
                        CREATE TABLE agents (
                            id INTEGER PRIMARY KEY ASC,
                            server_reset_id INTEGER NOT NULL,
                            call_sign TEXT NOT NULL,
                            faction TEXT NOT NULL,
                            auth_token TEXT NOT NULL,
                            removed INTEGER NOT NULL DEFAULT 0,
                            FOREIGN KEY (server_reset_id) REFERENCES server_reset(id)
                        )
                    """)
                    tx.execute("CREATE INDEX index_agents_removed ON agents(removed)")
                    tx.execute("""
                        CREATE TABLE tagged_agents (
                            tag INTEGER PRIMARY KEY ASC,
                            id INTEGER NOT NULL,
                            FOREIGN KEY (id) REFERENCES agents(id)
                        )
                    """)
                await self._db.set_meta_int(MetaInt.AGENT_MODULE_VERSION, AGENT_DB_VERSION, tx=tx)

            behavior = await self._db.get_meta_int(MetaInt.AGENT_SERVER_RESET_BEHAVIOR, tx=tx)
            if behavior is None:
                await self._db.set_meta_int(
                    MetaInt.AGENT_SERVER_RESET_BEHAVIOR,
                    BEHAVIOR_TO_INT[DEFAULT_SERVER_RESET_BEHAVIOR],
                    tx=tx,
                )

            await self.enforce_server_reset_behavior(tx=tx)

        await self._db.enqueue(_init, with_transaction=True)
        self._server_reset.on_complete_reset(self._on_reset_complete)

    async def _on_reset_complete(self, reset: ResetComplete) -> None:
        await self.enforce_server_reset_behavior()

    # --- Selection listeners ---

    def on_selection_change(self, listener: SelectionListener) -> None:
        """Register `listener(agent_or_None, tx)`; it runs inside the selection transaction."""
        self._selection_listeners.append(listener)

    async def _fire_selection_change(self, agent: AgentRecord | None, tx: Transaction) -> None:
        for listener in self._selection_listeners:
            await listener(agent, tx)

    # --- Queries ---

    async def get_agents(self, *, tx: Transaction | None = None) -> AgentList:
        async def _get(t: Transaction) -> AgentList:
            rows = t.fetchall(f"{_SELECT_AGENT} WHERE removed = 0 ORDER BY id ASC")
            selected = await self.get_selected_agent_id(tx=t)
            return AgentList(agents=[_record(r) for r in rows], selected=selected)

        return await self._db.enqueue(_get, tx=tx, with_transaction=True)

    async def get_selected_agent_id(self, *, tx: Transaction | None = None) -> int | None:
        async def _get(t: Transaction) -> int | None:
            return t.scalar(
                "SELECT id FROM tagged_agents WHERE tag = ?", (AgentTag.SELECTED_AGENT.value,),
            )

        return await self._db.enqueue(_get, tx=tx)

    async def get_selected_agent(self, *, tx: Transaction | None = None) -> AgentRecord | None:
        async def _get(t: Transaction) -> AgentRecord | None:
            row = t.fetchone(
                f"{_SELECT_AGENT} INNER JOIN tagged_agents ON tagged_agents.id = agents.id "
                "WHERE tagged_agents.tag = ?",
                (AgentTag.SELECTED_AGENT.value,),
            )
            return None if row is None else _record(row)

        return await self._db.enqueue(_get, tx=tx)

    async def _get_agent(self, tx: Transaction, agent_id: int) -> AgentRecord | None:
        row = tx.fetchone(f"{_SELECT_AGENT} WHERE id = ? AND removed = 0", (agent_id,))
        return None if row is None else _record(row)

    # --- Mutations ---

    async def add_agent(self, auth_token: str, *, tx: Transaction | None = None) -> AddedAgent:
        """Look the token's agent up on the server and store it.

        The new agent becomes selected if no agent was selected before.
        """
        result = await agent_api.get_agent_details(self._client, auth_token)
        if not result.success:
            raise AgentError(result.error_message or "Failed to fetch agent details", result)
        try:
            details = ApiResponse[Agent].model_validate(result.payload).data
        except ValidationError as exc:
            raise AgentError(f"Agent details are malformed: {exc}", result) from exc

        async def _add(t: Transaction) -> AddedAgent:
            server_reset_id = self._server_reset.current_epoch_id()
            cursor = t.execute(
                "INSERT INTO agents (server_reset_id, call_sign, faction, auth_token) "
                "VALUES (?, ?, ?, ?)",
                (server_reset_id, details.symbol, details.starting_faction, auth_token),
            )
            agent_id = cursor.lastrowid
            cursor = t.execute(
                "INSERT OR IGNORE INTO tagged_agents (tag, id) VALUES (?, ?)",
                (AgentTag.SELECTED_AGENT.value, agent_id),
            )
            selected = cursor.rowcount > 0
            logger.info("Added agent %s (id=%d, selected=%s)", details.symbol, agent_id, selected)
            if selected:
                await self._fire_selection_change(
                    AgentRecord(
                        id=agent_id,
                        call_sign=details.symbol,
                        faction=details.starting_faction,
                        auth_token=auth_token,
                        server_reset_id=server_reset_id,
                    ),
                    t,
                )
            return AddedAgent(id=agent_id, selected=selected)

        return await self._db.enqueue(_add, tx=tx, with_transaction=True)

    async def select_agent(self, agent_id: int | None, *, tx: Transaction | None = None) -> None:
        """Select an agent, or clear the selection with None."""

        async def _select(t: Transaction) -> None:
            if agent_id is None:
                cursor = t.execute(
                    "DELETE FROM tagged_agents WHERE tag = ?", (AgentTag.SELECTED_AGENT.value,),
                )
                if cursor.rowcount > 0:
                    logger.info("Agent selection cleared")
                    await self._fire_selection_change(None, t)
                return

            if await self.get_selected_agent_id(tx=t) == agent_id:
                return
            agent = await self._get_agent(t, agent_id)
            if agent is None:
                raise AgentError(f'No agent with id "{agent_id}"')
            t.execute(
                "INSERT OR REPLACE INTO tagged_agents (tag, id) VALUES (?, ?)",
                (AgentTag.SELECTED_AGENT.value, agent_id),
            )
            logger.info("Selected agent %s (id=%d)", agent.call_sign, agent_id)
            await self._fire_selection_change(agent, t)

        await self._db.enqueue(_select, tx=tx, with_transaction=True)

    async def remove_agent(self, agent_id: int, *, tx: Transaction | None = None) -> None:
        async def _remove(t: Transaction) -> None:
            if await self._get_agent(t, agent_id) is None:
                raise AgentError(f'No agent with id "{agent_id}"')
            cursor = t.execute(
                "DELETE FROM tagged_agents WHERE tag = ? AND id = ?",
                (AgentTag.SELECTED_AGENT.value, agent_id),
            )
            was_selected = cursor.rowcount > 0
            t.execute("UPDATE agents SET removed = 1 WHERE id = ?", (agent_id,))
            logger.info("Removed agent id=%d", agent_id)
            if was_selected:
                await self._fire_selection_change(None, t)

        await self._db.enqueue(_remove, tx=tx, with_transaction=True)

    # --- Server reset behavior ---

    async def get_server_reset_behavior(
        self, *, tx: Transaction | None = None,
    ) -> ServerResetBehavior:
        value = await self._db.get_meta_int(MetaInt.AGENT_SERVER_RESET_BEHAVIOR, tx=tx)
        if value is None:
            return DEFAULT_SERVER_RESET_BEHAVIOR
        return INT_TO_BEHAVIOR[value]

    async def set_server_reset_behavior(
        self, behavior: ServerResetBehavior, *, tx: Transaction | None = None,
    ) -> None:
        await self._db.set_meta_int(
            MetaInt.AGENT_SERVER_RESET_BEHAVIOR, BEHAVIOR_TO_INT[behavior], tx=tx,
        )

    async def enforce_server_reset_behavior(self, *, tx: Transaction | None = None) -> None:
        """Apply the configured behavior to agents from earlier epochs."""

        async def _enforce(t: Transaction) -> None:
            behavior = await self.get_server_reset_behavior(tx=t)
            server_reset_id = self._server_reset.current_epoch_id()
            # None: unchanged. False: cleared. AgentRecord: newly selected.
            selection_change: AgentRecord | bool | None = None

            if behavior is ServerResetBehavior.REMOVE:
                self._remove_stale(t, server_reset_id)
            elif behavior is ServerResetBehavior.RECREATE:
                stale = [
                    _record(row) for row in t.fetchall(
                        f"{_SELECT_AGENT} WHERE removed = 0 AND server_reset_id != ? "
                        "ORDER BY id ASC",
                        (server_reset_id,),
                    )
                ]
                selected_id = await self.get_selected_agent_id(tx=t)
                self._remove_stale(t, server_reset_id)
                recreated = await self._recreate(t, stale, selected_id, server_reset_id)
                if recreated is not None:
                    selection_change = recreated

            # If the selected agent has been removed, deselect it.
            removed = t.scalar(
                "SELECT agents.removed FROM agents "
                "INNER JOIN tagged_agents ON agents.id = tagged_agents.id "
                "WHERE tagged_agents.tag = ?",
                (AgentTag.SELECTED_AGENT.value,),
            )
            if removed:
                logger.debug("Clearing selection from removed agent")
                t.execute(
                    "DELETE FROM tagged_agents WHERE tag = ?", (AgentTag.SELECTED_AGENT.value,),
                )
                selection_change = False

            if isinstance(selection_change, AgentRecord):
                await self._fire_selection_change(selection_change, t)
            elif selection_change is False:
                await self._fire_selection_change(None, t)

        await self._db.enqueue(_enforce, tx=tx, with_transaction=True)

    def _remove_stale(self, tx: Transaction, server_reset_id: int) -> None:
        cursor = tx.execute(
            "UPDATE agents SET removed = 1 WHERE server_reset_id != ? AND removed = 0",
            (server_reset_id,),
        )
        if cursor.rowcount > 0:
            logger.info("Removed %d stale agents", cursor.rowcount)

    async def _recreate(
        self,
        tx: Transaction,
        stale: list[AgentRecord],
        selected_id: int | None,
        server_reset_id: int,
    ) -> AgentRecord | None:
        """Re-register stale call signs. Returns the new selected agent, if it was recreated."""
        by_call_sign = {agent.call_sign: agent for agent in stale}
        new_selection: AgentRecord | None = None
        for call_sign, old in by_call_sign.items():
            logger.info("Recreating agent %s", call_sign)
            result = await agent_api.register_agent(self._client, call_sign, old.faction)
            if not result.success:
                logger.warning("Failed to recreate agent %s: %s", call_sign, result.error_message)
                continue
            try:
                registration = ApiResponse[Registration].model_validate(result.payload).data
            except ValidationError as exc:
                logger.warning("Malformed registration for %s: %s", call_sign, exc)
                continue

            cursor = tx.execute(
                "INSERT INTO agents (server_reset_id, call_sign, faction, auth_token) "
                "VALUES (?, ?, ?, ?)",
                (
                    server_reset_id, call_sign, registration.agent.starting_faction,
                    registration.token,
                ),
            )
            if any(agent.id == selected_id for agent in stale if agent.call_sign == call_sign):
                tx.execute(
                    "INSERT OR REPLACE INTO tagged_agents (tag, id) VALUES (?, ?)",
                    (AgentTag.SELECTED_AGENT.value, cursor.lastrowid),
                )
                new_selection = AgentRecord(
                    id=cursor.lastrowid,
                    call_sign=call_sign,
                    faction=registration.agent.starting_faction,
                    auth_token=registration.token,
                    server_reset_id=server_reset_id,
                )
        return new_selection
