"""Core entities: competitors, slots and the shared selection state."""
from __future__ import annotations

import math
from dataclasses import dataclass


def parse_elapsed_time(value: str | None) -> float | None:
    """Parse an elapsed time string to total seconds.

    Args:
        value: "mm:ss:cc" (minutes, seconds, centiseconds), "mm:ss" or
            "mm:ss.ff"

    Returns:
        Total seconds as float, or None if parsing fails

    Examples:
        - "12:34:56" → 754.56
        - "1:05" → 65.0
        - "1:05.5" → 65.5
        - "" → None
        - "fast" → None
    """
    if not value:
        return None
    parts = value.strip().split(":")
    try:
        if len(parts) == 3:
            minutes, seconds, centis = (int(p) for p in parts)
            if centis < 0 or centis > 99:
                return None
            fraction = centis / 100
        elif len(parts) == 2:
            minutes = int(parts[0])
            sec_float = float(parts[1])
            if not math.isfinite(sec_float):
                return None
            seconds = int(sec_float)
            fraction = sec_float - seconds
        else:
            return None
    except ValueError:
        return None
    if minutes < 0 or seconds < 0 or seconds > 59:
        return None
    return round(minutes * 60 + seconds + fraction, 2)


@dataclass(frozen=True)
class Competitor:
    number: int
    pilot_name: str = ""
    pilot_country: str = ""
    navigator_name: str = ""
    navigator_country: str = ""
    car_brand: str = ""
    time: str = ""

    @property
    def elapsed_seconds(self) -> float | None:
        return parse_elapsed_time(self.time)


@dataclass(frozen=True)
class Slot:
    position: int
    competitor: Competitor | None = None

    @property
    def occupied(self) -> bool:
        return self.competitor is not None

    @property
    def number(self) -> int | None:
        return self.competitor.number if self.competitor is not None else None


@dataclass(frozen=True)
class SelectionState:
    """Who is being offered a slot, and where the cursor points.

    When `selecting` is None the cursor carries no meaning.
    """

    selecting: Competitor | None = None
    cursor: int = 1

    @property
    def selecting_number(self) -> int | None:
        return self.selecting.number if self.selecting is not None else None

    def matches(self, other: "SelectionState") -> bool:
        return self.selecting_number == other.selecting_number and self.cursor == other.cursor


def same_competitor(a: Competitor | None, b: Competitor | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.number == b.number
