"""Competitor registry: the ranked roster.

Competitors are ranked by elapsed time ascending. Competitors without a
parsable time rank after all timed ones; ties keep competitor number order so
the ranking is deterministic on every client.
"""
from __future__ import annotations

import logging
from typing import Iterable, Iterator, Sequence

from .errors import DuplicateCompetitor
from .models import Competitor

logger = logging.getLogger(__name__)


def _rank_key(competitor: Competitor) -> tuple[int, float, int]:
    elapsed = competitor.elapsed_seconds
    if elapsed is None:
        return (1, 0.0, competitor.number)
    return (0, elapsed, competitor.number)


def rank_competitors(competitors: Iterable[Competitor]) -> tuple[Competitor, ...]:
    return tuple(sorted(competitors, key=_rank_key))


class CompetitorRegistry:
    """Ranked, read-mostly snapshot of the roster.

    The registry is replaced wholesale whenever the roster changes; it is
    never edited in place during assignment.
    """

    def __init__(self, competitors: Iterable[Competitor] = ()):
        self._ranked: tuple[Competitor, ...] = ()
        self._by_number: dict[int, Competitor] = {}
        self.replace(competitors)

    def replace(self, competitors: Iterable[Competitor]) -> bool:
        """Swap in a new roster. Returns True if anything changed.

        Raises DuplicateCompetitor if two entries share a number.
        """
        by_number: dict[int, Competitor] = {}
        for comp in competitors:
            if comp.number in by_number:
                raise DuplicateCompetitor(comp.number)
            by_number[comp.number] = comp
        ranked = rank_competitors(by_number.values())
        if ranked == self._ranked:
            return False
        self._ranked = ranked
        self._by_number = by_number
        logger.debug(f"Registry loaded: {len(ranked)} competitors")
        return True

    def ranked(self) -> tuple[Competitor, ...]:
        return self._ranked

    def get(self, number: int | None) -> Competitor | None:
        if number is None:
            return None
        return self._by_number.get(number)

    def rank_of(self, number: int) -> int | None:
        """1-based rank, or None if unknown."""
        for idx, comp in enumerate(self._ranked, start=1):
            if comp.number == number:
                return idx
        return None

    def unplaced(self, placed_numbers: Sequence[int] | set[int]) -> list[Competitor]:
        placed = set(placed_numbers)
        return [c for c in self._ranked if c.number not in placed]

    def __contains__(self, number: object) -> bool:
        return number in self._by_number

    def __iter__(self) -> Iterator[Competitor]:
        return iter(self._ranked)

    def __len__(self) -> int:
        return len(self._ranked)

    def __bool__(self) -> bool:
        return bool(self._ranked)
