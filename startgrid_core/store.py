"""Remote store interface and an in-process implementation.

The remote store owns durable truth for three tables: `teams` (roster),
`start_position` (one row per occupied slot, unique on
`(session_id, position)`) and `current_selection` (a singleton row keyed by a
fixed id). It fans out row-level change events to subscribers, including the
writer.

`MemoryStore` implements the full contract in-process. Each subscription owns
an asyncio queue drained by its own task, so a subscriber observes one table's
events in the order the store applied them. There is no ordering across
tables.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from .errors import DuplicateSubscription, RemoteUnavailable, UniqueViolation
from .types import (
    CURRENT_SELECTION,
    START_POSITION,
    TEAMS,
    ChangeEvent,
    EventKind,
    SelectionRow,
    StartPositionRow,
    TableName,
    TeamRow,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]

POSITION_CONSTRAINT = "start_position_session_position_key"
TEAM_SLOT_CONSTRAINT = "start_position_session_team_key"
TEAM_NUMBER_CONSTRAINT = "teams_pkey"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription:
    """Live change-feed subscription for one table.

    Events are queued and handed to the callback one at a time. `release()`
    may be called any number of times; only the first call has an effect.
    """

    def __init__(
        self,
        table: TableName,
        callback: ChangeCallback,
        *,
        owner: str,
        match: Optional[Dict[str, Any]] = None,
        on_release: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.table = table
        self.owner = owner
        self.match = dict(match or {})
        self._callback = callback
        self._on_release = on_release
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._unhandled = 0
        self._task = asyncio.get_running_loop().create_task(self._pump())
        self.released = False

    @property
    def key(self) -> Tuple[str, TableName]:
        return (self.owner, self.table)

    def accepts(self, event: ChangeEvent) -> bool:
        if not self.match:
            return True
        for row in (event.get("new"), event.get("old")):
            if row and all(row.get(k) == v for k, v in self.match.items()):
                return True
        return False

    def deliver(self, event: ChangeEvent) -> None:
        if self.released:
            return
        self._unhandled += 1
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        """Events delivered but not yet fully handled (queued or in flight)."""
        if self.released:
            return 0
        return self._unhandled

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._callback(event)
            except Exception as exc:
                logger.error(
                    f"Change handler failed for {self.owner}/{self.table}: {exc}",
                    exc_info=True,
                )
            finally:
                self._unhandled -= 1
                self._queue.task_done()

    async def drain(self) -> None:
        if not self.released:
            await self._queue.join()

    def release(self) -> bool:
        """Stop delivery. Returns False if already released."""
        if self.released:
            return False
        self.released = True
        self._task.cancel()
        if self._on_release is not None:
            self._on_release(self)
        logger.debug(f"Released subscription {self.owner}/{self.table}")
        return True


class RemoteStore(Protocol):
    async def fetch_teams(self) -> List[TeamRow]: ...

    async def insert_team(self, row: TeamRow) -> None: ...

    async def update_team(self, row: TeamRow) -> None: ...

    async def delete_team(self, number: int) -> None: ...

    async def reset_teams(self) -> None: ...

    async def fetch_start_positions(self, session_id: str) -> List[StartPositionRow]: ...

    async def insert_start_position(
        self, position: int, team_number: int, session_id: str
    ) -> None: ...

    async def delete_start_position(self, position: int, session_id: str) -> None: ...

    async def reset_start_positions(self, session_id: str) -> None: ...

    async def fetch_selection(self, row_id: int) -> Optional[SelectionRow]: ...

    async def upsert_selection(self, row: SelectionRow) -> None: ...

    async def reset_selection(
        self, row_id: int, session_id: str, *, written_by: Optional[str] = None
    ) -> None: ...

    async def ping(self) -> None: ...

    def subscribe(
        self,
        table: TableName,
        callback: ChangeCallback,
        *,
        owner: str,
        match: Optional[Dict[str, Any]] = None,
    ) -> Subscription: ...


class MemoryStore:
    """In-process remote store with change fan-out.

    Failure injection:
        - `online = False` makes every call raise RemoteUnavailable
        - `latency` delays every call (seconds), to exercise timeouts
        - `pause_delivery()` buffers change events until `resume_delivery()`,
          to simulate a slow change feed
    """

    def __init__(self, *, latency: float = 0.0):
        self.latency = latency
        self.online = True
        self._teams: Dict[int, TeamRow] = {}
        self._positions: Dict[Tuple[str, int], StartPositionRow] = {}
        self._selection: Dict[int, SelectionRow] = {}
        self._subs: Dict[Tuple[str, TableName], Subscription] = {}
        self._paused = False
        self._held: List[ChangeEvent] = []
        # (operation, table, row) for every accepted write
        self.write_log: List[Tuple[str, TableName, dict]] = []

    # ---- plumbing ---------------------------------------------------------

    async def _round_trip(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        if not self.online:
            raise RemoteUnavailable("store offline")

    def _publish(
        self, table: TableName, kind: EventKind, new: Optional[dict], old: Optional[dict]
    ) -> None:
        event: ChangeEvent = {"table": table, "kind": kind, "new": new, "old": old}
        if self._paused:
            self._held.append(event)
            return
        self._fan_out(event)

    def _fan_out(self, event: ChangeEvent) -> None:
        for sub in list(self._subs.values()):
            if sub.table == event["table"] and sub.accepts(event):
                sub.deliver(copy.deepcopy(event))

    def _log(self, op: str, table: TableName, row: dict) -> None:
        self.write_log.append((op, table, copy.deepcopy(row)))

    def writes(self, table: TableName, op: Optional[str] = None) -> int:
        return sum(1 for o, t, _ in self.write_log if t == table and (op is None or o == op))

    def pause_delivery(self) -> None:
        self._paused = True

    def resume_delivery(self) -> None:
        self._paused = False
        held, self._held = self._held, []
        for event in held:
            self._fan_out(event)

    async def settle(self, rounds: int = 50) -> None:
        """Wait until every delivered change event has been handled.

        Handlers may write, which queues more events; keep draining until a
        full pass finds nothing pending.
        """
        for _ in range(rounds):
            for sub in list(self._subs.values()):
                await sub.drain()
            await asyncio.sleep(0)
            if all(sub.pending == 0 for sub in self._subs.values()):
                return
        raise RuntimeError("change feed did not settle")

    # ---- subscriptions ----------------------------------------------------

    def subscribe(
        self,
        table: TableName,
        callback: ChangeCallback,
        *,
        owner: str,
        match: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        key = (owner, table)
        if key in self._subs:
            raise DuplicateSubscription(f"{owner} already subscribed to {table}")
        sub = Subscription(table, callback, owner=owner, match=match, on_release=self._detach)
        self._subs[key] = sub
        logger.debug(f"Subscribed {owner} to {table}")
        return sub

    def _detach(self, sub: Subscription) -> None:
        if self._subs.get(sub.key) is sub:
            del self._subs[sub.key]

    def subscription_count(self, owner: Optional[str] = None) -> int:
        return sum(1 for o, _ in self._subs if owner is None or o == owner)

    # ---- teams ------------------------------------------------------------

    async def fetch_teams(self) -> List[TeamRow]:
        await self._round_trip()
        return [copy.deepcopy(row) for row in self._teams.values()]

    async def insert_team(self, row: TeamRow) -> None:
        await self._round_trip()
        number = row["number"]
        if number in self._teams:
            raise UniqueViolation(TEAM_NUMBER_CONSTRAINT)
        self._teams[number] = copy.deepcopy(row)
        self._log("insert", TEAMS, row)
        self._publish(TEAMS, "INSERT", copy.deepcopy(row), None)

    async def update_team(self, row: TeamRow) -> None:
        await self._round_trip()
        number = row["number"]
        old = self._teams.get(number)
        if old is None:
            return
        self._teams[number] = copy.deepcopy(row)
        self._log("update", TEAMS, row)
        self._publish(TEAMS, "UPDATE", copy.deepcopy(row), old)

    async def delete_team(self, number: int) -> None:
        await self._round_trip()
        old = self._teams.pop(number, None)
        if old is None:
            return
        self._log("delete", TEAMS, old)
        # ON DELETE CASCADE
        for key, pos_row in list(self._positions.items()):
            if pos_row["team_number"] == number:
                del self._positions[key]
                self._publish(START_POSITION, "DELETE", None, pos_row)
        self._publish(TEAMS, "DELETE", None, old)

    async def reset_teams(self) -> None:
        await self._round_trip()
        for number in list(self._teams):
            old = self._teams.pop(number)
            self._log("delete", TEAMS, old)
            for key, pos_row in list(self._positions.items()):
                if pos_row["team_number"] == number:
                    del self._positions[key]
                    self._publish(START_POSITION, "DELETE", None, pos_row)
            self._publish(TEAMS, "DELETE", None, old)

    # ---- start positions --------------------------------------------------

    async def fetch_start_positions(self, session_id: str) -> List[StartPositionRow]:
        await self._round_trip()
        rows: List[StartPositionRow] = []
        for (sid, _), row in sorted(self._positions.items(), key=lambda kv: kv[0][1]):
            if sid != session_id:
                continue
            joined: StartPositionRow = copy.deepcopy(row)
            team = self._teams.get(row["team_number"])
            joined["teams"] = copy.deepcopy(team) if team is not None else None
            rows.append(joined)
        return rows

    async def insert_start_position(
        self, position: int, team_number: int, session_id: str
    ) -> None:
        await self._round_trip()
        if (session_id, position) in self._positions:
            raise UniqueViolation(
                POSITION_CONSTRAINT, f"Position {position} is already occupied."
            )
        for (sid, _), row in self._positions.items():
            if sid == session_id and row["team_number"] == team_number:
                raise UniqueViolation(
                    TEAM_SLOT_CONSTRAINT, f"Team {team_number} already has a position."
                )
        row: StartPositionRow = {
            "position": position,
            "team_number": team_number,
            "session_id": session_id,
        }
        self._positions[(session_id, position)] = row
        self._log("insert", START_POSITION, row)
        self._publish(START_POSITION, "INSERT", copy.deepcopy(row), None)

    async def delete_start_position(self, position: int, session_id: str) -> None:
        await self._round_trip()
        old = self._positions.pop((session_id, position), None)
        if old is None:
            return
        self._log("delete", START_POSITION, old)
        self._publish(START_POSITION, "DELETE", None, old)

    async def reset_start_positions(self, session_id: str) -> None:
        await self._round_trip()
        for key in sorted(k for k in self._positions if k[0] == session_id):
            old = self._positions.pop(key)
            self._log("delete", START_POSITION, old)
            self._publish(START_POSITION, "DELETE", None, old)

    # ---- selection --------------------------------------------------------

    async def fetch_selection(self, row_id: int) -> Optional[SelectionRow]:
        await self._round_trip()
        row = self._selection.get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def upsert_selection(self, row: SelectionRow) -> None:
        await self._round_trip()
        stored: SelectionRow = copy.deepcopy(row)
        stored.setdefault("updated_at", _utc_now_iso())
        row_id = stored["id"]
        old = self._selection.get(row_id)
        self._selection[row_id] = stored
        self._log("upsert", CURRENT_SELECTION, stored)
        self._publish(
            CURRENT_SELECTION,
            "INSERT" if old is None else "UPDATE",
            copy.deepcopy(stored),
            old,
        )

    async def reset_selection(
        self, row_id: int, session_id: str, *, written_by: Optional[str] = None
    ) -> None:
        row: SelectionRow = {
            "id": row_id,
            "selecting_competitor_id": None,
            "current_position": 1,
            "session_id": session_id,
            "updated_at": _utc_now_iso(),
        }
        if written_by is not None:
            row["written_by"] = written_by
        await self.upsert_selection(row)

    async def ping(self) -> None:
        await self._round_trip()
