from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from app.models.enrichment.results import BatchSummary


class SchedulerStatusResponse(BaseModel):
    """API response shape for ``GET /scheduler``."""

    state: str
    next_fire_at: datetime | None
    cursor: str | None
    consecutive_failures: int
    runs_completed: int
    last_summary: BatchSummary | None = None
