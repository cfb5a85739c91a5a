"""
Row validation using Pydantic v2
Converts store-shaped rows into core entities at the replication boundary
"""

import logging
import re
from typing import Iterable, List, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidRow
from .models import Competitor, SelectionState, parse_elapsed_time

logger = logging.getLogger(__name__)


class InputSanitizer:
    """Utility class for input sanitization"""

    @staticmethod
    def sanitize_string(value: str, max_length: int = 255) -> str:
        """Sanitize string input"""
        if not isinstance(value, str):
            return str(value)[:max_length]

        value = value.strip()
        value = value[:max_length]
        value = value.replace("\0", "")

        return value

    @staticmethod
    def sanitize_person_name(name: str) -> str:
        """Sanitize pilot/navigator name for display - preserve diacritics"""
        name = InputSanitizer.sanitize_string(name, 255)

        # Keep Unicode letters (Portuguese ç, ã, é, etc.), digits, spaces, dashes, apostrophes
        dangerous_chars = r'[<>{}[\]\\|;()&$`"\*\x00-\x1f\x7f]'
        name = re.sub(dangerous_chars, "", name)

        return name.strip()

    @staticmethod
    def sanitize_label(value: str) -> str:
        """Sanitize short labels (country, car brand)"""
        return InputSanitizer.sanitize_person_name(InputSanitizer.sanitize_string(value, 100))


class TeamRecord(BaseModel):
    """A `teams` row as stored remotely."""

    number: int = Field(..., ge=0, le=99999, description="Competitor number")
    car_brand: str = Field("", max_length=100)
    pilot_name: str = Field("", max_length=255)
    pilot_country: str = Field("", max_length=100)
    navigator_name: str = Field("", max_length=255)
    navigator_country: str = Field("", max_length=100)
    time: str = Field("", max_length=20, description="Elapsed time, mm:ss:cc")

    model_config = ConfigDict(extra="ignore")

    @field_validator(
        "car_brand", "pilot_name", "pilot_country", "navigator_name", "navigator_country",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, v: object) -> str:
        """Null columns come back as None"""
        if v is None:
            return ""
        return str(v)

    @field_validator("pilot_name", "navigator_name")
    @classmethod
    def clean_names(cls, v: str) -> str:
        return InputSanitizer.sanitize_person_name(v)

    @field_validator("car_brand", "pilot_country", "navigator_country")
    @classmethod
    def clean_labels(cls, v: str) -> str:
        return InputSanitizer.sanitize_label(v)

    @field_validator("time", mode="before")
    @classmethod
    def validate_time(cls, v: object) -> str:
        """Accept empty times; reject strings that are not mm:ss:cc"""
        if v is None:
            return ""
        v = str(v).strip()
        if v and parse_elapsed_time(v) is None:
            raise ValueError("time must be mm:ss:cc format")
        return v

    def to_competitor(self) -> Competitor:
        return Competitor(
            number=self.number,
            pilot_name=self.pilot_name,
            pilot_country=self.pilot_country,
            navigator_name=self.navigator_name,
            navigator_country=self.navigator_country,
            car_brand=self.car_brand,
            time=self.time,
        )


class StartPositionRecord(BaseModel):
    """A `start_position` row, optionally joined with its team"""

    position: int = Field(..., ge=1)
    team_number: Optional[int] = Field(None, ge=0)
    session_id: str = Field("default", min_length=1, max_length=64)
    teams: Optional[TeamRecord] = None

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def validate_join(self) -> Self:
        """Joined team must agree with team_number"""
        if self.team_number is None and self.teams is not None:
            self.team_number = self.teams.number
        if self.team_number is None:
            raise ValueError("start_position row requires team_number")
        if self.teams is not None and self.teams.number != self.team_number:
            raise ValueError("joined team does not match team_number")
        return self


class SelectionRecord(BaseModel):
    """The singleton `current_selection` row"""

    id: int = Field(..., ge=1)
    selecting_competitor_id: Optional[int] = Field(None, ge=0)
    current_position: int = Field(1, ge=1)
    session_id: str = Field("default", min_length=1, max_length=64)
    updated_at: Optional[str] = None
    written_by: Optional[str] = Field(None, max_length=128)

    model_config = ConfigDict(extra="ignore")

    @field_validator("current_position", mode="before")
    @classmethod
    def default_position(cls, v: object) -> object:
        """A reset row may carry a null position"""
        return 1 if v is None else v


def parse_team_row(row: object) -> TeamRecord:
    """Validate one team row. Raises InvalidRow."""
    try:
        return TeamRecord.model_validate(row)
    except ValidationError as e:
        raise InvalidRow(f"Invalid team row: {e}") from e


def parse_team_rows(rows: Iterable[object]) -> List[Competitor]:
    """Validate team rows, dropping (and logging) invalid ones."""
    competitors: List[Competitor] = []
    for row in rows or []:
        try:
            competitors.append(parse_team_row(row).to_competitor())
        except InvalidRow as e:
            logger.warning(f"Dropping team row: {e}")
    return competitors


def parse_position_row(row: object) -> StartPositionRecord:
    """Validate one start_position row. Raises InvalidRow."""
    try:
        return StartPositionRecord.model_validate(row)
    except ValidationError as e:
        raise InvalidRow(f"Invalid start_position row: {e}") from e


def parse_selection_row(row: object) -> SelectionRecord:
    """Validate the selection row. Raises InvalidRow."""
    try:
        return SelectionRecord.model_validate(row)
    except ValidationError as e:
        raise InvalidRow(f"Invalid current_selection row: {e}") from e


def selection_from_record(
    record: SelectionRecord, lookup, slot_count: int
) -> SelectionState:
    """Resolve a selection record against the roster.

    `lookup` maps a competitor number to a Competitor (or None). An unknown
    number resolves to no selection; a cursor outside [1, slot_count] is
    clamped.
    """
    selecting = None
    if record.selecting_competitor_id is not None:
        selecting = lookup(record.selecting_competitor_id)
        if selecting is None:
            logger.debug(
                f"Selection names unknown competitor #{record.selecting_competitor_id}"
            )
    cursor = min(max(record.current_position, 1), slot_count)
    return SelectionState(selecting=selecting, cursor=cursor)


__all__ = [
    "InputSanitizer",
    "TeamRecord",
    "StartPositionRecord",
    "SelectionRecord",
    "parse_team_row",
    "parse_team_rows",
    "parse_position_row",
    "parse_selection_row",
    "selection_from_record",
]
