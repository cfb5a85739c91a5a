"""Session configuration (pydantic v2)."""
from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "STARTGRID_"


class NextPickPolicy(str, Enum):
    """Which un-placed competitor is offered next."""

    # Front of the ranked list (fastest remaining time).
    HIGHEST_RANKED = "highest_ranked"
    # End of the ranked list; matches what the first deployment did.
    LOWEST_RANKED = "lowest_ranked"


class CursorHome(str, Enum):
    """Where the cursor lands when a new competitor is offered."""

    FIRST = "first"
    FIRST_EMPTY = "first_empty"


class SessionConfig(BaseModel):
    """Settings for one assignment session."""

    slot_count: int = Field(10, ge=1, le=200, description="Number of start slots")
    session_id: str = Field(
        "default", min_length=1, max_length=64, description="Store session key"
    )
    selection_row_id: int = Field(1, ge=1, description="Id of the singleton selection row")
    remote_timeout: float = Field(
        5.0, gt=0, le=60, description="Seconds before a remote call counts as failed"
    )
    next_pick: NextPickPolicy = NextPickPolicy.HIGHEST_RANKED
    cursor_home: CursorHome = CursorHome.FIRST

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SessionConfig":
        """Build a config from STARTGRID_* variables, ignoring unset ones.

        Recognized: STARTGRID_SLOT_COUNT, STARTGRID_SESSION_ID,
        STARTGRID_SELECTION_ROW_ID, STARTGRID_REMOTE_TIMEOUT,
        STARTGRID_NEXT_PICK, STARTGRID_CURSOR_HOME.
        """
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None or not raw.strip():
                continue
            values[name] = raw.strip()
        if values:
            logger.debug(f"Session config overrides from env: {sorted(values)}")
        return cls.model_validate(values)
