"""Assignment session: the surface presentation collaborators talk to.

The session owns one registry, slot table, selection cursor and replication
layer, and passes them by reference to the components that need them. Every
imperative operation returns an `ActionOutcome`; algorithmic failures and
remote failures come back as typed failures rather than exceptions.

Commit path (confirm):
    1. check preconditions against the local table (slot empty, competitor
       not placed yet)
    2. occupy the slot locally
    3. insert the row remotely; the store's unique constraint on
       (session_id, position) decides races between clients
    4. on a constraint rejection, drop the local placement, re-read the slot
       table and report ALREADY_OCCUPIED / ALREADY_PLACED
    5. on success, advance to the next eligible competitor

The cascade is only ever used for `preview`; a commit never shifts other
occupants.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .advance import AutoAdvance, Phase, check_confirm
from .cascade import SlotMove, insert_with_cascade, preview_placement
from .config import SessionConfig
from .errors import (
    ActionOutcome,
    AssignmentError,
    AssignmentFailure,
    DuplicateCompetitor,
    ErrorKind,
    RemoteUnavailable,
    UniqueViolation,
)
from .models import Competitor, SelectionState, Slot
from .registry import CompetitorRegistry
from .replication import ReplicationLayer
from .selection import SelectionCursor
from .slots import SlotTable
from .store import TEAM_SLOT_CONSTRAINT, RemoteStore
from .validation import parse_team_row

logger = logging.getLogger(__name__)


def rejection_kind(error: UniqueViolation) -> ErrorKind:
    """Failure kind for a store constraint rejection on a start_position insert."""
    if error.constraint == TEAM_SLOT_CONSTRAINT:
        return ErrorKind.ALREADY_PLACED
    return ErrorKind.ALREADY_OCCUPIED


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session at one point in time."""

    session_id: str
    slots: tuple[Slot, ...]
    selection: SelectionState
    competitors: tuple[Competitor, ...]
    phase: Phase
    pending_positions: tuple[int, ...] = ()

    @property
    def selecting(self) -> Competitor | None:
        return self.selection.selecting

    @property
    def cursor(self) -> int:
        return self.selection.cursor

    def as_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "phase": self.phase.value,
            "selectingCompetitor": self.selection.selecting_number,
            "cursorPosition": self.selection.cursor,
            "slots": [{"position": s.position, "competitor": s.number} for s in self.slots],
            "competitors": [c.number for c in self.competitors],
            "pendingPositions": list(self.pending_positions),
        }


class AssignmentSession:
    def __init__(
        self,
        store: RemoteStore,
        config: Optional[SessionConfig] = None,
        *,
        owner: Optional[str] = None,
    ):
        self.config = config or SessionConfig()
        self.store = store
        self.registry = CompetitorRegistry()
        self.table = SlotTable(self.config.slot_count)
        self.cursor = SelectionCursor(self.config.slot_count)
        self.advance = AutoAdvance(
            self.registry,
            self.table,
            self.cursor,
            next_pick=self.config.next_pick,
            cursor_home=self.config.cursor_home,
        )
        self.replication = ReplicationLayer(
            store,
            self.registry,
            self.table,
            self.cursor,
            self.config,
            owner=owner,
            on_change=self._on_remote_change,
        )
        # Last failure raised while reacting to the change feed.
        self.last_error: AssignmentFailure | None = None

    @property
    def owner(self) -> str:
        return self.replication.owner

    @property
    def started(self) -> bool:
        return self.replication.started

    @property
    def phase(self) -> Phase:
        return self.advance.phase

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.config.session_id,
            slots=self.table.get(),
            selection=self.cursor.state,
            competitors=self.registry.ranked(),
            phase=self.phase,
            pending_positions=tuple(sorted(self.replication.pending)),
        )

    # ---- lifecycle --------------------------------------------------------

    async def start(self) -> ActionOutcome:
        """Read the remote state, subscribe, then settle the offer."""
        try:
            await self.replication.start()
        except RemoteUnavailable as e:
            await self.replication.stop()
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        return await self._reconcile()

    async def stop(self) -> None:
        await self.replication.stop()

    async def __aenter__(self) -> "AssignmentSession":
        outcome = await self.start()
        if not outcome.ok and not self.started:
            raise RemoteUnavailable(outcome.error.message if outcome.error else "start failed")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _require_started(self) -> None:
        if not self.started:
            raise RuntimeError("session must be started before it accepts changes")

    # ---- helpers ----------------------------------------------------------

    def _failure(self, kind: ErrorKind, message: str | None = None) -> ActionOutcome:
        return ActionOutcome.failure(kind, message, snapshot=self.snapshot())

    def _error(self, error: AssignmentError) -> ActionOutcome:
        return ActionOutcome(ok=False, snapshot=self.snapshot(), error=error.to_failure())

    def _success(self) -> ActionOutcome:
        return ActionOutcome.success(self.snapshot())

    async def _reconcile(self) -> ActionOutcome:
        try:
            await self.advance.reconcile()
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        return self._success()

    async def _on_remote_change(self) -> None:
        outcome = await self._reconcile()
        if not outcome.ok:
            self.last_error = outcome.error
            logger.warning(f"{self.owner}: auto-advance write failed: {outcome.error.message}")

    async def _rejected(self, error: UniqueViolation) -> ActionOutcome:
        """Re-read the slot table after the store refused an insert."""
        try:
            await self.replication.reload_positions()
        except RemoteUnavailable as reload_error:
            logger.warning(f"{self.owner}: re-sync after rejection failed: {reload_error}")
        await self._on_remote_change()
        return self._failure(rejection_kind(error), str(error))

    # ---- assignment operations --------------------------------------------

    async def confirm_current_selection(self) -> ActionOutcome:
        """Place the offered competitor at the cursor, then advance.

        Raises RuntimeError if the session was never started; every other
        failure comes back in the outcome.
        """
        self._require_started()
        try:
            competitor, position = check_confirm(self.table, self.cursor.state)
            self.table.occupy(position, competitor)
        except AssignmentError as e:
            logger.debug(f"{self.owner}: confirm blocked: {e}")
            return self._error(e)

        try:
            await self.replication.insert_position(position, competitor)
        except UniqueViolation as e:
            if self.table.slot(position).number == competitor.number:
                self.table.vacate(position)
            logger.info(f"{self.owner}: store rejected #{competitor.number} at {position}: {e}")
            return await self._rejected(e)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))

        logger.info(f"{self.owner}: placed #{competitor.number} at {position}")
        return await self._reconcile()

    async def move_cursor(self, delta: int) -> ActionOutcome:
        """Move the cursor by `delta`, clamped to the table.

        Raises RuntimeError if the session was never started.
        """
        self._require_started()
        try:
            await self.cursor.move(delta)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        return self._success()

    async def set_cursor(self, position: int) -> ActionOutcome:
        self._require_started()
        try:
            await self.cursor.set_cursor(position)
        except AssignmentError as e:
            return self._error(e)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        return self._success()

    async def reset_all(self) -> ActionOutcome:
        """Clear every slot and the offer, then offer again from the top.

        Raises RuntimeError if the session was never started.
        """
        self._require_started()
        self.table.reset()
        self.cursor.clear()
        try:
            await self.replication.reset_remote()
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        logger.info(f"{self.owner}: reset session {self.config.session_id!r}")
        return await self._reconcile()

    async def vacate(self, position: int) -> ActionOutcome:
        """Free one slot (operator correction)."""
        self._require_started()
        try:
            self.table.vacate(position)
        except AssignmentError as e:
            return self._error(e)
        try:
            await self.replication.delete_position(position)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        return await self._reconcile()

    async def retry_pending(self) -> ActionOutcome:
        """Re-send placements whose insert failed earlier."""
        self._require_started()
        try:
            done = await self.replication.retry_pending()
        except UniqueViolation as e:
            logger.info(f"{self.owner}: store rejected a pending placement: {e}")
            return await self._rejected(e)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        if done:
            logger.info(f"{self.owner}: acknowledged positions {done}")
        return await self._reconcile()

    def preview(self, position: int, competitor: Competitor | None = None) -> tuple[Slot, ...]:
        """Where everyone would land if `competitor` (default: the offered
        one) took `position`. Never writes."""
        competitor = competitor or self.cursor.selecting
        if competitor is None:
            return self.table.get()
        return insert_with_cascade(self.table.get(), competitor, position)

    def preview_moves(self, position: int) -> list[SlotMove]:
        competitor = self.cursor.selecting
        if competitor is None:
            return []
        return preview_placement(self.table.get(), competitor, position)

    # ---- roster -----------------------------------------------------------

    def _put_competitor(self, competitor: Competitor) -> None:
        # The teams feed may already have delivered this row.
        by_number = {c.number: c for c in self.registry.ranked()}
        by_number[competitor.number] = competitor
        self.registry.replace(by_number.values())

    async def add_competitor(self, row: Mapping[str, Any]) -> ActionOutcome:
        self._require_started()
        try:
            record = parse_team_row(row)
            if record.number in self.registry:
                raise DuplicateCompetitor(record.number)
        except AssignmentError as e:
            return self._error(e)
        try:
            await self.replication.insert_team(record)
        except UniqueViolation:
            return self._error(DuplicateCompetitor(record.number))
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        self._put_competitor(record.to_competitor())
        return await self._reconcile()

    async def update_competitor(self, row: Mapping[str, Any]) -> ActionOutcome:
        self._require_started()
        try:
            record = parse_team_row(row)
        except AssignmentError as e:
            return self._error(e)
        if record.number not in self.registry:
            return self._failure(
                ErrorKind.UNKNOWN_COMPETITOR, f"competitor #{record.number} does not exist"
            )
        try:
            await self.replication.update_team(record)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        updated = record.to_competitor()
        self._put_competitor(updated)
        self.table.refresh_competitors(self.registry.get)
        if self.cursor.selecting is not None and self.cursor.selecting.number == updated.number:
            self.cursor.apply_remote(SelectionState(selecting=updated, cursor=self.cursor.cursor))
        return await self._reconcile()

    async def remove_competitor(self, number: int) -> ActionOutcome:
        self._require_started()
        if number not in self.registry:
            return self._failure(ErrorKind.UNKNOWN_COMPETITOR, f"competitor #{number} does not exist")
        try:
            await self.replication.delete_team(number)
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        self.registry.replace(c for c in self.registry.ranked() if c.number != number)
        position = self.table.position_of(number)
        if position is not None:
            self.table.vacate(position)
        return await self._reconcile()

    async def clear_roster(self) -> ActionOutcome:
        self._require_started()
        try:
            await self.replication.reset_teams()
        except RemoteUnavailable as e:
            return self._failure(ErrorKind.REMOTE_UNAVAILABLE, str(e))
        self.registry.replace([])
        self.table.reset()
        return await self._reconcile()


__all__ = ["AssignmentSession", "SessionSnapshot"]
