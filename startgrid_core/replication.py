"""Replication layer: bridges the cached core state and the remote store.

Lifecycle:
    start()  one full read of roster, slot table and selection row, then one
             subscription per table; calling it again does nothing
    stop()   releases every subscription exactly once; safe to repeat

Incoming rows are validated (`startgrid_core.validation`) and merged through
the equality-gated merge helpers of the slot table and cursor, so a client's
own writes coming back through the feed change nothing. Store-shaped dicts
never get past this module.

Every remote call is bounded by `config.remote_timeout`; a timeout or
transport failure surfaces as RemoteUnavailable and leaves local state as it
was.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .config import SessionConfig
from .errors import InvalidRow, RemoteUnavailable, UniqueViolation
from .models import Competitor, SelectionState
from .registry import CompetitorRegistry
from .selection import SelectionCursor
from .slots import SlotTable
from .store import RemoteStore, Subscription
from .types import (
    CURRENT_SELECTION,
    START_POSITION,
    TEAMS,
    ChangeEvent,
    SelectionRow,
    StartPositionRow,
    TableName,
    TeamRow,
)
from .validation import (
    TeamRecord,
    parse_position_row,
    parse_selection_row,
    parse_team_rows,
    selection_from_record,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ChangeHook = Callable[[], Awaitable[None]]


def _unique_by_number(competitors: Iterable[Competitor]) -> List[Competitor]:
    seen: set[int] = set()
    unique: List[Competitor] = []
    for comp in competitors:
        if comp.number in seen:
            logger.warning(f"Dropping duplicate roster entry #{comp.number}")
            continue
        seen.add(comp.number)
        unique.append(comp)
    return unique


class ReplicationLayer:
    def __init__(
        self,
        store: RemoteStore,
        registry: CompetitorRegistry,
        table: SlotTable,
        cursor: SelectionCursor,
        config: Optional[SessionConfig] = None,
        *,
        owner: Optional[str] = None,
        on_change: Optional[ChangeHook] = None,
    ):
        self.store = store
        self.registry = registry
        self.table = table
        self.cursor = cursor
        self.config = config or SessionConfig()
        self.owner = owner or f"client-{uuid.uuid4().hex[:8]}"
        self.on_change = on_change
        self.started = False
        self._subs: Dict[TableName, Subscription] = {}
        # position -> competitor number, placed locally but not acknowledged
        self._unacked: Dict[int, int] = {}
        # Tokens of our own selection writes whose echo has not arrived yet,
        # in the order the store applies them.
        self._own_tokens: List[str] = []
        self._write_seq = 0
        self._write_lock = asyncio.Lock()
        cursor.bind(self.publish_selection)

    # ---- remote call wrapper ----------------------------------------------

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.remote_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Remote {what} timed out after {self.config.remote_timeout}s")
            raise RemoteUnavailable(f"{what} timed out") from e
        except RemoteUnavailable as e:
            logger.warning(f"Remote {what} failed: {e}")
            raise
        except OSError as e:
            logger.warning(f"Remote {what} failed: {e}")
            raise RemoteUnavailable(f"{what} failed: {e}") from e

    # ---- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self.started:
            return
        await self.load()
        self.subscribe()
        self.started = True
        logger.info(
            f"{self.owner} joined session {self.config.session_id!r}: "
            f"{len(self.registry)} competitors, {self.table.occupied_count()} placed"
        )

    def subscribe(self) -> None:
        """Open one subscription per table, skipping tables already live."""
        wanted = (
            (TEAMS, self._on_teams_event, None),
            (START_POSITION, self._on_position_event, None),
            (CURRENT_SELECTION, self._on_selection_event, {"id": self.config.selection_row_id}),
        )
        for table, handler, match in wanted:
            existing = self._subs.get(table)
            if existing is not None and not existing.released:
                continue
            self._subs[table] = self.store.subscribe(table, handler, owner=self.owner, match=match)

    @property
    def subscriptions(self) -> Dict[TableName, Subscription]:
        return dict(self._subs)

    async def stop(self) -> None:
        subs, self._subs = self._subs, {}
        for sub in subs.values():
            sub.release()
        if self.started:
            logger.info(f"{self.owner} left session {self.config.session_id!r}")
        self.started = False

    async def __aenter__(self) -> "ReplicationLayer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ---- full reads -------------------------------------------------------

    async def load(self) -> None:
        """Read roster, slot table and selection row from the store."""
        await self.reload_roster()
        await self.reload_positions()
        row = await self._call(
            self.store.fetch_selection(self.config.selection_row_id), "fetch_selection"
        )
        if row is not None:
            self._merge_selection_row(row)

    async def reload_roster(self) -> bool:
        rows: List[TeamRow] = await self._call(self.store.fetch_teams(), "fetch_teams")
        changed = self.registry.replace(_unique_by_number(parse_team_rows(rows)))
        selecting = self.cursor.selecting
        if selecting is not None:
            fresh = self.registry.get(selecting.number)
            if fresh is not None and fresh != selecting:
                self.cursor.apply_remote(SelectionState(selecting=fresh, cursor=self.cursor.cursor))
        return changed

    async def reload_positions(self) -> bool:
        rows: List[StartPositionRow] = await self._call(
            self.store.fetch_start_positions(self.config.session_id), "fetch_start_positions"
        )
        placements: List[Tuple[int, Competitor]] = []
        for row in rows:
            try:
                record = parse_position_row(row)
            except InvalidRow as e:
                logger.warning(f"Dropping start_position row: {e}")
                continue
            competitor = (
                record.teams.to_competitor()
                if record.teams is not None
                else self.registry.get(record.team_number)
            )
            if competitor is None:
                logger.warning(f"Slot {record.position} names unknown team #{record.team_number}")
                continue
            placements.append((record.position, competitor))
        changed = self.table.replace_all(placements)
        # Keep optimistic placements the store has not seen yet, unless the
        # slot or the competitor has since been taken by someone else's row.
        for position, number in sorted(self._unacked.items()):
            slot = self.table.slot(position)
            if slot.number == number:
                continue
            competitor = self.registry.get(number)
            if slot.occupied or competitor is None or self.table.position_of(number) is not None:
                del self._unacked[position]
                continue
            self.table.apply_remote_insert(position, competitor)
            changed = True
        return changed

    # ---- writes -----------------------------------------------------------

    def _next_token(self) -> str:
        self._write_seq += 1
        token = f"{self.owner}:{self._write_seq}"
        self._own_tokens.append(token)
        return token

    def _drop_token(self, token: str) -> None:
        if token in self._own_tokens:
            self._own_tokens.remove(token)

    def _selection_row(self, state: SelectionState, token: str) -> SelectionRow:
        return {
            "id": self.config.selection_row_id,
            "selecting_competitor_id": state.selecting_number,
            "current_position": state.cursor,
            "session_id": self.config.session_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "written_by": token,
        }

    async def publish_selection(self, state: SelectionState) -> None:
        # Token is taken before waiting on the lock so tokens, lock order and
        # store order all agree.
        token = self._next_token()
        row = self._selection_row(state, token)
        try:
            async with self._write_lock:
                await self._call(self.store.upsert_selection(row), "upsert_selection")
        except RemoteUnavailable:
            self._drop_token(token)
            raise

    async def insert_position(self, position: int, competitor: Competitor) -> None:
        """Insert one occupied slot. Raises UniqueViolation or RemoteUnavailable.

        A RemoteUnavailable leaves the placement queued for `retry_pending`.
        """
        self._unacked[position] = competitor.number
        try:
            await self._call(
                self.store.insert_start_position(
                    position, competitor.number, self.config.session_id
                ),
                "insert_start_position",
            )
        except UniqueViolation:
            self._unacked.pop(position, None)
            raise
        self._unacked.pop(position, None)

    @property
    def pending(self) -> Dict[int, int]:
        return dict(self._unacked)

    async def retry_pending(self) -> List[int]:
        """Re-send placements whose insert failed. Returns positions acknowledged.

        Stops at the first RemoteUnavailable; UniqueViolation propagates.
        """
        done: List[int] = []
        for position, number in sorted(self._unacked.items()):
            competitor = self.table.slot(position).competitor
            if competitor is None or competitor.number != number:
                self._unacked.pop(position, None)
                continue
            await self.insert_position(position, competitor)
            done.append(position)
        return done

    async def delete_position(self, position: int) -> None:
        self._unacked.pop(position, None)
        await self._call(
            self.store.delete_start_position(position, self.config.session_id),
            "delete_start_position",
        )

    async def reset_remote(self) -> None:
        self._unacked.clear()
        await self._call(
            self.store.reset_start_positions(self.config.session_id), "reset_start_positions"
        )
        token = self._next_token()
        try:
            async with self._write_lock:
                await self._call(
                    self.store.reset_selection(
                        self.config.selection_row_id, self.config.session_id, written_by=token
                    ),
                    "reset_selection",
                )
        except RemoteUnavailable:
            self._drop_token(token)
            raise

    async def insert_team(self, record: TeamRecord) -> None:
        row: TeamRow = record.model_dump()
        await self._call(self.store.insert_team(row), "insert_team")

    async def update_team(self, record: TeamRecord) -> None:
        row: TeamRow = record.model_dump()
        await self._call(self.store.update_team(row), "update_team")

    async def delete_team(self, number: int) -> None:
        await self._call(self.store.delete_team(number), "delete_team")

    async def reset_teams(self) -> None:
        self._unacked.clear()
        await self._call(self.store.reset_teams(), "reset_teams")

    # ---- change feed ------------------------------------------------------

    async def _notify(self) -> None:
        if self.on_change is not None:
            await self.on_change()

    async def _on_teams_event(self, event: ChangeEvent) -> None:
        logger.debug(f"{self.owner}: teams {event['kind']}")
        # Roster edits change rank order and joined slot data; re-read both.
        roster_changed = await self.reload_roster()
        slots_changed = await self.reload_positions()
        if not (roster_changed or slots_changed):
            self.table.refresh_competitors(self.registry.get)
        await self._notify()

    async def _on_position_event(self, event: ChangeEvent) -> None:
        changed = False
        if event["kind"] == "DELETE":
            old = event.get("old")
            if not old or old.get("session_id", self.config.session_id) != self.config.session_id:
                return
            position = old.get("position")
            if isinstance(position, int):
                self._unacked.pop(position, None)
                changed = self.table.apply_remote_delete(position)
        else:
            try:
                record = parse_position_row(event.get("new"))
            except InvalidRow as e:
                logger.warning(f"{self.owner}: ignoring start_position event: {e}")
                return
            if record.session_id != self.config.session_id:
                return
            if self._unacked.get(record.position) == record.team_number:
                self._unacked.pop(record.position, None)
            competitor = self.registry.get(record.team_number)
            if competitor is None:
                # Unknown team: the roster moved under us, read everything.
                await self.reload_roster()
                changed = await self.reload_positions()
            else:
                changed = self.table.apply_remote_insert(record.position, competitor)
        if changed:
            await self._notify()

    def _merge_selection_row(self, row: SelectionRow | dict) -> bool:
        try:
            record = parse_selection_row(row)
        except InvalidRow as e:
            logger.warning(f"{self.owner}: ignoring current_selection row: {e}")
            return False
        if record.session_id != self.config.session_id:
            return False
        state = selection_from_record(record, self.registry.get, self.table.slot_count)
        return self.cursor.apply_remote(state)

    def _superseded_echo(self, row: dict) -> bool:
        """True for the echo of our own write when we have written since."""
        token = row.get("written_by")
        if token not in self._own_tokens:
            return False
        idx = self._own_tokens.index(token)
        latest = idx == len(self._own_tokens) - 1
        del self._own_tokens[: idx + 1]
        return not latest

    async def _on_selection_event(self, event: ChangeEvent) -> None:
        new = event.get("new")
        if event["kind"] == "DELETE" or not new:
            changed = self.cursor.apply_remote(SelectionState())
        elif self._superseded_echo(new):
            logger.debug(f"{self.owner}: skipping superseded echo {new.get('written_by')}")
            return
        else:
            changed = self._merge_selection_row(new)
        if changed:
            await self._notify()
