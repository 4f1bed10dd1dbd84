from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.models.common import AcceptedResponse
from app.models.enrichment.results import BatchSummary
from app.models.scheduler.schemas import SchedulerStatusResponse
from app.services.scheduler.scheduler import EnrichmentScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


def _get_scheduler(request: Request) -> EnrichmentScheduler:
    scheduler: EnrichmentScheduler | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is not available")
    return scheduler


@router.get(
    "",
    response_model=SchedulerStatusResponse,
    summary="Current scheduler state and last run summary",
)
async def get_scheduler(
    scheduler: EnrichmentScheduler = Depends(_get_scheduler),
) -> SchedulerStatusResponse:
    return SchedulerStatusResponse(
        state=scheduler.state.value,
        next_fire_at=scheduler.run.next_fire_at,
        cursor=scheduler.run.cursor,
        consecutive_failures=scheduler.run.consecutive_failures,
        runs_completed=scheduler.run.runs_completed,
        last_summary=scheduler.last_summary,
    )


@router.post(
    "/run",
    response_model=BatchSummary,
    responses={202: {"model": AcceptedResponse}},
    summary="Run one enrichment batch now",
)
async def run_scheduler(
    scheduler: EnrichmentScheduler = Depends(_get_scheduler),
) -> BatchSummary | JSONResponse:
    """Select and enrich one batch of stale links outside the timer.

    - **200**: batch summary (check ``aborted`` for Link Store failures)
    - **202**: a batch is already running; nothing new was started
    - **503**: scheduler not initialised
    """
    if scheduler.is_running_batch:
        return JSONResponse(
            status_code=202,
            content=AcceptedResponse(message="An enrichment run is already in progress.").model_dump(),
        )
    summary = await scheduler.run_scheduled_batch()
    if summary.aborted:
        logger.warning("POST /scheduler/run aborted: %s", summary.error)
    return summary
