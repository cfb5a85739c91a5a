"""Selection cursor: the shared "who is choosing, and where" handle.

Every remote write comes back to every subscriber, the writer included, so
each setter is a no-op (and writes nothing) when the requested value already
matches local state. Remote rows are merged through `apply_remote`, which
never writes.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from .models import Competitor, SelectionState, same_competitor
from .slots import check_position

logger = logging.getLogger(__name__)

Publisher = Callable[[SelectionState], Awaitable[None]]


class SelectionCursor:
    """Owned by the session and passed by reference to whoever needs it."""

    def __init__(self, slot_count: int = 10, publish: Optional[Publisher] = None):
        self.slot_count = slot_count
        self._state = SelectionState()
        self._publish = publish

    def bind(self, publish: Optional[Publisher]) -> None:
        self._publish = publish

    @property
    def state(self) -> SelectionState:
        return self._state

    @property
    def selecting(self) -> Competitor | None:
        return self._state.selecting

    @property
    def cursor(self) -> int:
        return self._state.cursor

    async def _push(self) -> None:
        # Local state is already updated; a failed write leaves it in place.
        if self._publish is not None:
            await self._publish(self._state)

    async def set_selecting(self, competitor: Competitor | None) -> bool:
        """Returns False (and writes nothing) if already selecting that competitor."""
        if same_competitor(self._state.selecting, competitor):
            return False
        self._state = replace(self._state, selecting=competitor)
        logger.debug(f"Selecting #{competitor.number if competitor else None}")
        await self._push()
        return True

    async def set_cursor(self, position: int) -> bool:
        position = check_position(position, self.slot_count)
        if position == self._state.cursor:
            return False
        self._state = replace(self._state, cursor=position)
        await self._push()
        return True

    async def offer(self, competitor: Competitor | None, cursor: int = 1) -> bool:
        """Set competitor and cursor together with a single write."""
        cursor = check_position(cursor, self.slot_count)
        wanted = SelectionState(selecting=competitor, cursor=cursor)
        if wanted.matches(self._state):
            return False
        self._state = wanted
        logger.debug(f"Offering #{wanted.selecting_number} at {cursor}")
        await self._push()
        return True

    async def move(self, delta: int) -> bool:
        target = min(max(self._state.cursor + delta, 1), self.slot_count)
        return await self.set_cursor(target)

    async def move_up(self) -> bool:
        return await self.move(-1)

    async def move_down(self) -> bool:
        return await self.move(1)

    def apply_remote(self, state: SelectionState) -> bool:
        """Merge a row from the store without writing. Returns True if changed."""
        if state == self._state:
            return False
        self._state = state
        return True

    def clear(self) -> None:
        self._state = SelectionState()
