"""Type definitions for rows exchanged with the remote store.

These are the store-shaped (snake_case, loosely typed) records. They never
travel past the replication boundary: `startgrid_core.validation` converts
them into the frozen `Competitor`/`Slot`/`SelectionState` entities.
"""
from __future__ import annotations

from typing import Literal, Optional, TypedDict


class TeamRow(TypedDict, total=False):
    """A roster row in the `teams` table."""
    number: int
    car_brand: str
    pilot_name: str
    pilot_country: str
    navigator_name: str
    navigator_country: str
    time: str  # elapsed time, "mm:ss:cc"


class StartPositionRow(TypedDict, total=False):
    """
    A row in the `start_position` table.

    Only occupied slots have rows. `(position, session_id)` is unique.
    Reads join the competitor under `teams`; change events do not.
    """
    position: int
    team_number: int
    session_id: str
    teams: Optional[TeamRow]


class SelectionRow(TypedDict, total=False):
    """The singleton `current_selection` row (fixed `id`)."""
    id: int
    selecting_competitor_id: Optional[int]
    current_position: int
    session_id: str
    updated_at: str  # ISO-8601
    written_by: Optional[str]  # "<client>:<seq>", lets a client spot its own echoes


TableName = Literal["teams", "start_position", "current_selection"]
EventKind = Literal["INSERT", "UPDATE", "DELETE"]


class ChangeEvent(TypedDict):
    """Row-level change notification delivered to subscribers."""
    table: TableName
    kind: EventKind
    new: Optional[dict]
    old: Optional[dict]


TEAMS: TableName = "teams"
START_POSITION: TableName = "start_position"
CURRENT_SELECTION: TableName = "current_selection"
