"""Slot table: the cached, fixed-size starting order.

The table always holds exactly `slot_count` slots, positions 1..N in order.
Occupancy is what varies. A competitor number occupies at most one slot; every
mutator here preserves that, including the remote merge helpers.
"""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from .errors import AlreadyOccupied, AlreadyPlaced, OutOfRange
from .models import Competitor, Slot

logger = logging.getLogger(__name__)


def empty_slots(slot_count: int) -> tuple[Slot, ...]:
    return tuple(Slot(position=i) for i in range(1, slot_count + 1))


def check_position(position: object, slot_count: int) -> int:
    """Return position as int if it lies in [1, slot_count]. Raises OutOfRange."""
    if isinstance(position, bool) or not isinstance(position, int):
        raise OutOfRange(position, slot_count)
    if position < 1 or position > slot_count:
        raise OutOfRange(position, slot_count)
    return position


class SlotTable:
    def __init__(self, slot_count: int = 10):
        if slot_count < 1:
            raise ValueError("slot_count must be positive")
        self.slot_count = slot_count
        self._slots: list[Slot] = list(empty_slots(slot_count))

    def get(self) -> tuple[Slot, ...]:
        return tuple(self._slots)

    def slot(self, position: int) -> Slot:
        return self._slots[check_position(position, self.slot_count) - 1]

    def position_of(self, number: int) -> int | None:
        for slot in self._slots:
            if slot.number == number:
                return slot.position
        return None

    def placed_numbers(self) -> set[int]:
        return {s.number for s in self._slots if s.number is not None}

    def occupied_count(self) -> int:
        return sum(1 for s in self._slots if s.occupied)

    def is_full(self) -> bool:
        return self.occupied_count() == self.slot_count

    def first_empty(self) -> int | None:
        for slot in self._slots:
            if not slot.occupied:
                return slot.position
        return None

    # ---- local mutations -------------------------------------------------

    def occupy(self, position: int, competitor: Competitor) -> "SlotTable":
        """Place a competitor into an empty slot.

        Raises OutOfRange, AlreadyOccupied, or AlreadyPlaced. Callers that
        may target an occupied slot preview through
        `cascade.insert_with_cascade` instead.
        """
        current = self.slot(position)
        if current.occupied:
            raise AlreadyOccupied(position, current.number)
        existing = self.position_of(competitor.number)
        if existing is not None:
            raise AlreadyPlaced(competitor.number, existing)
        self._slots[position - 1] = Slot(position=position, competitor=competitor)
        logger.debug(f"Slot {position} <- #{competitor.number}")
        return self

    def vacate(self, position: int) -> Competitor | None:
        """Empty one slot. Returns the previous occupant."""
        previous = self.slot(position).competitor
        self._slots[position - 1] = Slot(position=position)
        return previous

    def reset(self) -> "SlotTable":
        self._slots = list(empty_slots(self.slot_count))
        return self

    # ---- remote merges (equality-gated) ----------------------------------

    def apply_remote_insert(self, position: int, competitor: Competitor) -> bool:
        """Merge an occupied row from the store. Returns True if changed.

        The store is authoritative: a different local occupant is replaced,
        and the competitor is removed from any other slot it held locally.
        """
        try:
            current = self.slot(position)
        except OutOfRange:
            logger.warning(f"Ignoring remote slot outside table: {position}")
            return False
        if current.competitor == competitor:
            return False
        stale = self.position_of(competitor.number)
        if stale is not None and stale != position:
            self._slots[stale - 1] = Slot(position=stale)
        self._slots[position - 1] = Slot(position=position, competitor=competitor)
        return True

    def apply_remote_delete(self, position: int) -> bool:
        try:
            current = self.slot(position)
        except OutOfRange:
            return False
        if not current.occupied:
            return False
        self._slots[position - 1] = Slot(position=position)
        return True

    def replace_all(self, placements: Iterable[tuple[int, Competitor]]) -> bool:
        """Replace the whole table with authoritative placements.

        Rows outside the table, or a second row for the same competitor, are
        dropped with a warning. Returns True if anything changed.
        """
        fresh = list(empty_slots(self.slot_count))
        seen: set[int] = set()
        for position, competitor in sorted(placements, key=lambda p: p[0]):
            if position < 1 or position > self.slot_count:
                logger.warning(f"Ignoring remote slot outside table: {position}")
                continue
            if fresh[position - 1].occupied or competitor.number in seen:
                logger.warning(
                    f"Ignoring conflicting remote row: #{competitor.number} at {position}"
                )
                continue
            fresh[position - 1] = Slot(position=position, competitor=competitor)
            seen.add(competitor.number)
        if fresh == self._slots:
            return False
        self._slots = fresh
        return True

    def refresh_competitors(self, lookup) -> bool:
        """Re-resolve occupants after a roster edit.

        Occupants the roster no longer knows are kept as they are.
        """
        changed = False
        for idx, slot in enumerate(self._slots):
            if slot.competitor is None:
                continue
            updated = lookup(slot.competitor.number)
            if updated is not None and updated != slot.competitor:
                self._slots[idx] = Slot(position=slot.position, competitor=updated)
                changed = True
        return changed


def validate_table(slots: Sequence[Slot], slot_count: int) -> None:
    """Assert the structural invariants of a table. Raises ValueError."""
    if [s.position for s in slots] != list(range(1, slot_count + 1)):
        raise ValueError("slot positions must be exactly 1..N in order")
    numbers = [s.number for s in slots if s.number is not None]
    if len(numbers) != len(set(numbers)):
        raise ValueError("a competitor occupies more than one slot")
