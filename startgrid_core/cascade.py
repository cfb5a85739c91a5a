"""Cascade insertion (preview only).

`insert_with_cascade` answers "where would everyone end up if this competitor
took position P?" without touching any state. Commits never go through here:
the commit path only writes into a slot it has checked is empty, so a
multi-slot shift is never made durable.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .errors import OutOfRange
from .models import Competitor, Slot


@dataclass(frozen=True)
class SlotMove:
    position: int
    before: Competitor | None
    after: Competitor | None


def _find_free(occupants: Sequence[Competitor | None], index: int) -> int | None:
    for i in range(index + 1, len(occupants)):
        if occupants[i] is None:
            return i
    for i in range(index - 1, -1, -1):
        if occupants[i] is None:
            return i
    return None


def insert_with_cascade(
    slots: Sequence[Slot], competitor: Competitor, position: int
) -> tuple[Slot, ...]:
    """Place `competitor` at `position`, shifting occupants toward a free slot.

    1. Empty target: place there, nothing else moves.
    2. Otherwise the first empty slot after P: occupants of (P, F] shift
       one place away from P, the competitor takes P.
    3. Otherwise the first empty slot before P: occupants of [F, P) shift
       one place away from P, the competitor takes P.
    4. No empty slot: the table comes back unchanged.

    Raises OutOfRange if position is outside the table.
    """
    count = len(slots)
    if isinstance(position, bool) or not isinstance(position, int) or not 1 <= position <= count:
        raise OutOfRange(position, count)

    occupants: list[Competitor | None] = [s.competitor for s in slots]
    index = position - 1

    if occupants[index] is not None:
        free = _find_free(occupants, index)
        if free is None:
            return tuple(slots)
        if free > index:
            for i in range(free, index, -1):
                occupants[i] = occupants[i - 1]
        else:
            for i in range(free, index):
                occupants[i] = occupants[i + 1]
    occupants[index] = competitor

    return tuple(Slot(position=s.position, competitor=c) for s, c in zip(slots, occupants))


def preview_placement(
    slots: Sequence[Slot], competitor: Competitor, position: int
) -> list[SlotMove]:
    """List the slots whose occupant would change."""
    result = insert_with_cascade(slots, competitor, position)
    return [
        SlotMove(position=old.position, before=old.competitor, after=new.competitor)
        for old, new in zip(slots, result)
        if old.competitor != new.competitor
    ]
