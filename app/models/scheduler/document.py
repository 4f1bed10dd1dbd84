from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class SchedulerState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    ENRICHING_BATCH = "enriching_batch"
    COMMITTING = "committing"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ScheduledRun(BaseModel):
    """Process-local schedule bookkeeping; rebuilt from settings on restart."""

    next_fire_at: datetime | None = None
    #: id of the last link committed by the most recent run
    cursor: str | None = None
    #: runs aborted in a row because the Link Store was unusable
    consecutive_failures: int = 0
    runs_completed: int = 0
