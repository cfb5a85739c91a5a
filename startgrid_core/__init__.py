from .advance import Advance, AutoAdvance, Phase, check_confirm, derive_phase, next_eligible, plan_advance
from .cascade import SlotMove, insert_with_cascade, preview_placement
from .config import CursorHome, NextPickPolicy, SessionConfig
from .errors import (
    ActionOutcome,
    AlreadyOccupied,
    AlreadyPlaced,
    AssignmentError,
    AssignmentFailure,
    DuplicateCompetitor,
    DuplicateSubscription,
    ErrorKind,
    InvalidRow,
    OutOfRange,
    RemoteUnavailable,
    UniqueViolation,
    UnknownCompetitor,
)
from .health import HealthStatus, check_health
from .models import Competitor, SelectionState, Slot, parse_elapsed_time
from .registry import CompetitorRegistry, rank_competitors
from .replication import ReplicationLayer
from .selection import SelectionCursor
from .session import AssignmentSession, SessionSnapshot
from .slots import SlotTable
from .store import MemoryStore, RemoteStore, Subscription
from .types import ChangeEvent, SelectionRow, StartPositionRow, TeamRow
from .validation import InputSanitizer, SelectionRecord, StartPositionRecord, TeamRecord

__all__ = [
    "ActionOutcome",
    "Advance",
    "AlreadyOccupied",
    "AlreadyPlaced",
    "AssignmentError",
    "AssignmentFailure",
    "AssignmentSession",
    "AutoAdvance",
    "ChangeEvent",
    "Competitor",
    "CompetitorRegistry",
    "CursorHome",
    "DuplicateCompetitor",
    "DuplicateSubscription",
    "ErrorKind",
    "HealthStatus",
    "InputSanitizer",
    "InvalidRow",
    "MemoryStore",
    "NextPickPolicy",
    "OutOfRange",
    "Phase",
    "RemoteStore",
    "RemoteUnavailable",
    "ReplicationLayer",
    "SelectionCursor",
    "SelectionRecord",
    "SelectionRow",
    "SelectionState",
    "SessionConfig",
    "SessionSnapshot",
    "Slot",
    "SlotMove",
    "SlotTable",
    "StartPositionRecord",
    "StartPositionRow",
    "Subscription",
    "TeamRecord",
    "TeamRow",
    "UniqueViolation",
    "UnknownCompetitor",
    "check_confirm",
    "check_health",
    "derive_phase",
    "insert_with_cascade",
    "next_eligible",
    "parse_elapsed_time",
    "plan_advance",
    "preview_placement",
    "rank_competitors",
]
