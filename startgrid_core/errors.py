"""Error kinds, typed exceptions and action outcomes.

Algorithmic failures (out-of-range positions, occupied slots, competitors that
already hold a slot) are raised as `AssignmentError` subclasses inside the
core and converted to `ActionOutcome.failure(...)` at the session boundary, so
they never cross the replication boundary as exceptions.

Remote failures raise `RemoteUnavailable` (store down, network error,
timeout) or `UniqueViolation` (store-side constraint rejected an insert).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .session import SessionSnapshot


class ErrorKind(str, Enum):
    OUT_OF_RANGE = "out_of_range"
    ALREADY_OCCUPIED = "already_occupied"
    ALREADY_PLACED = "already_placed"
    UNKNOWN_COMPETITOR = "unknown_competitor"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    DUPLICATE_SUBSCRIPTION = "duplicate_subscription"
    DUPLICATE_COMPETITOR = "duplicate_competitor"
    INVALID_ROW = "invalid_row"


class AssignmentError(ValueError):
    """Base class for failures raised by the assignment core."""

    kind: ErrorKind = ErrorKind.INVALID_ROW

    def to_failure(self) -> "AssignmentFailure":
        return AssignmentFailure(kind=self.kind, message=str(self) or None)


class OutOfRange(AssignmentError):
    kind = ErrorKind.OUT_OF_RANGE

    def __init__(self, position: Any, slot_count: int):
        super().__init__(f"position {position!r} outside [1, {slot_count}]")
        self.position = position
        self.slot_count = slot_count


class AlreadyOccupied(AssignmentError):
    kind = ErrorKind.ALREADY_OCCUPIED

    def __init__(self, position: int, occupant: int | None = None):
        detail = f" by #{occupant}" if occupant is not None else ""
        super().__init__(f"position {position} is already occupied{detail}")
        self.position = position
        self.occupant = occupant


class AlreadyPlaced(AssignmentError):
    kind = ErrorKind.ALREADY_PLACED

    def __init__(self, number: int, position: int | None = None):
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"competitor #{number} already has a slot{where}")
        self.number = number
        self.position = position


class UnknownCompetitor(AssignmentError):
    kind = ErrorKind.UNKNOWN_COMPETITOR


class DuplicateCompetitor(AssignmentError):
    kind = ErrorKind.DUPLICATE_COMPETITOR

    def __init__(self, number: int):
        super().__init__(f"competitor #{number} already exists")
        self.number = number


class InvalidRow(AssignmentError):
    kind = ErrorKind.INVALID_ROW


class DuplicateSubscription(RuntimeError):
    """A second live subscription was requested for the same channel."""

    kind = ErrorKind.DUPLICATE_SUBSCRIPTION


class RemoteUnavailable(RuntimeError):
    """The remote store could not be reached or did not answer in time."""

    kind = ErrorKind.REMOTE_UNAVAILABLE


class UniqueViolation(RuntimeError):
    """The remote store rejected an insert on a uniqueness constraint."""

    def __init__(self, constraint: str, message: str | None = None):
        super().__init__(message or f"unique constraint {constraint!r} violated")
        self.constraint = constraint


@dataclass(frozen=True)
class AssignmentFailure:
    """Typed failure returned to presentation collaborators."""

    kind: ErrorKind
    message: str | None = None

    @property
    def user_visible(self) -> bool:
        return self.kind in {
            ErrorKind.ALREADY_OCCUPIED,
            ErrorKind.ALREADY_PLACED,
            ErrorKind.REMOTE_UNAVAILABLE,
            ErrorKind.DUPLICATE_COMPETITOR,
        }

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.REMOTE_UNAVAILABLE


@dataclass(frozen=True)
class ActionOutcome:
    """Result of an imperative session operation."""

    ok: bool
    snapshot: "SessionSnapshot | None" = None
    error: AssignmentFailure | None = None

    @classmethod
    def success(cls, snapshot: "SessionSnapshot | None" = None) -> "ActionOutcome":
        return cls(ok=True, snapshot=snapshot)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str | None = None,
        snapshot: "SessionSnapshot | None" = None,
    ) -> "ActionOutcome":
        return cls(ok=False, snapshot=snapshot, error=AssignmentFailure(kind, message))
