"""Confirm / auto-advance state machine.

Phases are derived, never stored:

    IDLE      registry empty, or nobody offered yet (transient)
    OFFERING  a competitor without a slot is bound to the cursor
    DONE      every competitor in the registry has a slot

`AutoAdvance.reconcile()` is run after every observed change to the slot
table, the registry or the selection, whether the change was local or came
from another client. When the offered competitor is missing or already
placed, it offers the next eligible one (or clears the offer when none are
left). Because reconcile only writes through the equality-gated cursor, any
number of clients reconciling the same change converge on the same row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .config import CursorHome, NextPickPolicy
from .errors import AlreadyOccupied, AlreadyPlaced, UnknownCompetitor
from .models import Competitor, SelectionState
from .registry import CompetitorRegistry
from .selection import SelectionCursor
from .slots import SlotTable

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    DONE = "done"


@dataclass(frozen=True)
class Advance:
    """The offer reconcile wants to publish. `competitor=None` clears it."""

    competitor: Competitor | None
    cursor: int = 1


def next_eligible(
    registry: CompetitorRegistry,
    table: SlotTable,
    policy: NextPickPolicy = NextPickPolicy.HIGHEST_RANKED,
) -> Competitor | None:
    remaining = registry.unplaced(table.placed_numbers())
    if not remaining:
        return None
    if policy is NextPickPolicy.LOWEST_RANKED:
        return remaining[-1]
    return remaining[0]


def home_cursor(table: SlotTable, policy: CursorHome = CursorHome.FIRST) -> int:
    if policy is CursorHome.FIRST_EMPTY:
        return table.first_empty() or 1
    return 1


def derive_phase(
    registry: CompetitorRegistry, table: SlotTable, selection: SelectionState
) -> Phase:
    if not registry:
        return Phase.IDLE
    placed = table.placed_numbers()
    if all(c.number in placed for c in registry):
        return Phase.DONE
    selecting = selection.selecting
    if selecting is not None and selecting.number in registry and selecting.number not in placed:
        return Phase.OFFERING
    return Phase.IDLE


def plan_advance(
    registry: CompetitorRegistry,
    table: SlotTable,
    selection: SelectionState,
    *,
    next_pick: NextPickPolicy = NextPickPolicy.HIGHEST_RANKED,
    cursor_home: CursorHome = CursorHome.FIRST,
) -> Advance | None:
    """Decide whether the current offer must be replaced. None means keep it."""
    selecting = selection.selecting
    placed = table.placed_numbers()
    if selecting is not None and selecting.number in registry and selecting.number not in placed:
        return None
    candidate = next_eligible(registry, table, next_pick)
    if candidate is None:
        if selecting is None:
            return None
        return Advance(competitor=None, cursor=1)
    return Advance(competitor=candidate, cursor=home_cursor(table, cursor_home))


def check_confirm(table: SlotTable, selection: SelectionState) -> tuple[Competitor, int]:
    """Preconditions for confirming the current offer.

    Returns (competitor, position). Raises UnknownCompetitor when nobody is
    offered, AlreadyOccupied when the cursor slot is taken, AlreadyPlaced
    when the offered competitor already holds a slot.
    """
    competitor = selection.selecting
    if competitor is None:
        raise UnknownCompetitor("no competitor is being offered a slot")
    position = selection.cursor
    slot = table.slot(position)
    if slot.occupied:
        raise AlreadyOccupied(position, slot.number)
    existing = table.position_of(competitor.number)
    if existing is not None:
        raise AlreadyPlaced(competitor.number, existing)
    return competitor, position


class AutoAdvance:
    def __init__(
        self,
        registry: CompetitorRegistry,
        table: SlotTable,
        cursor: SelectionCursor,
        *,
        next_pick: NextPickPolicy = NextPickPolicy.HIGHEST_RANKED,
        cursor_home: CursorHome = CursorHome.FIRST,
    ):
        self.registry = registry
        self.table = table
        self.cursor = cursor
        self.next_pick = next_pick
        self.cursor_home = cursor_home

    @property
    def phase(self) -> Phase:
        return derive_phase(self.registry, self.table, self.cursor.state)

    def plan(self) -> Advance | None:
        return plan_advance(
            self.registry,
            self.table,
            self.cursor.state,
            next_pick=self.next_pick,
            cursor_home=self.cursor_home,
        )

    async def reconcile(self) -> bool:
        """Apply the planned offer, if any. Returns True if a write was made.

        Raises RemoteUnavailable if the write fails; the local offer stays.
        """
        advance = self.plan()
        if advance is None:
            return False
        if advance.competitor is None:
            logger.info("All competitors placed")
        else:
            logger.info(
                f"Offering #{advance.competitor.number} "
                f"({advance.competitor.pilot_name or 'unnamed'}) at {advance.cursor}"
            )
        return await self.cursor.offer(advance.competitor, advance.cursor)
