"""Periodic, batched metadata refresh.

One ``EnrichmentScheduler`` is built at start-up and driven by
``run_forever`` in a background task.  Each run selects the stalest links,
enriches them through a bounded pool and commits each link on its own, so
one bad link never costs the rest of the batch.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Protocol

from app.core.config import settings
from app.core.errors import ErrorKind, LinkNotFound, PersistenceError
from app.models.enrichment.results import BatchSummary, EnrichmentOutcome, OutcomeKind
from app.models.links.document import LinkRecord
from app.models.scheduler.document import ScheduledRun, SchedulerState
from app.repositories.links.repository import LinkRepository
from app.services.enrichment.service import EnrichmentService

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class _BatchRun:
    """State shared by the per-link tasks of one run.

    After the first rate limit no more repository calls are made, and after
    the first Link Store failure no more links are started or committed.
    """

    def __init__(self, summary: BatchSummary) -> None:
        self.summary = summary
        self.deferred = False
        self.retry_after: float | None = None
        self.store_error: PersistenceError | None = None

    @property
    def aborted(self) -> bool:
        return self.store_error is not None

    def defer(self, retry_after: float | None) -> None:
        if not self.deferred:
            logger.warning(
                "Repository API rate limited; deferring remaining repository calls "
                "to the next run (retry after %s s)",
                retry_after,
            )
        self.deferred = True
        self.retry_after = retry_after


class EnrichmentScheduler:
    def __init__(
        self,
        service: EnrichmentService,
        links: LinkRepository,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._service = service
        self._links = links
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._stop = asyncio.Event()
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

        self.state = SchedulerState.IDLE
        self.run = ScheduledRun()
        self.last_summary: BatchSummary | None = None

    @property
    def is_running_batch(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    def next_delay(self) -> float:
        """Seconds until the next run: ``base ± base × jitter%``, never negative."""
        base = settings.update_interval.total_seconds()
        spread = base * settings.jitter_percent / 100
        return max(base + self._rng.uniform(-spread, spread), 0.0)

    def schedule_next(self) -> float:
        delay = self.next_delay()
        self.run.next_fire_at = self._clock.now() + timedelta(seconds=delay)
        logger.debug("Next enrichment run at %s (in %.0fs)", self.run.next_fire_at, delay)
        return delay

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="enrichment-scheduler")
        return self._task

    def cancel(self) -> None:
        """Signal shutdown: no new per-link work starts after this."""
        if self.state is not SchedulerState.TERMINATED:
            self.state = SchedulerState.SHUTTING_DOWN
        self._stop.set()

    async def stop(self, grace: float | None = None) -> None:
        """Cancel and wait up to *grace* seconds for in-flight links to finish."""
        grace = settings.shutdown_grace if grace is None else grace
        self.cancel()
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Scheduler did not stop within %.1fs; abandoning in-flight work", grace)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self.state = SchedulerState.TERMINATED
        logger.info("Scheduler stopped")

    async def run_forever(self) -> None:
        logger.info(
            "Scheduler started (interval=%s, jitter=%d%%, batch_size=%d, concurrency=%d)",
            settings.update_interval,
            settings.jitter_percent,
            settings.batch_size,
            settings.worker_concurrency,
        )
        while not self._stop.is_set():
            delay = self.schedule_next()
            if await self._wait(delay):
                break
            try:
                await self.run_scheduled_batch()
            except Exception:
                logger.exception("Scheduled enrichment run failed")
        self.state = SchedulerState.TERMINATED

    async def _wait(self, delay: float) -> bool:
        """Sleep for *delay* unless cancelled first; True when cancelled."""
        sleeper = asyncio.ensure_future(self._clock.sleep(delay))
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def run_scheduled_batch(self) -> BatchSummary:
        """Select, enrich and commit one batch of stale links.

        Never raises for per-link problems; a Link Store failure aborts the
        run and is reported through ``BatchSummary.aborted``.
        """
        async with self._lock:
            summary = await self._run_batch()
        self.last_summary = summary
        if self.state is not SchedulerState.SHUTTING_DOWN and not self._stop.is_set():
            self.state = SchedulerState.IDLE
        elif self.state is not SchedulerState.TERMINATED:
            self.state = SchedulerState.SHUTTING_DOWN
        return summary

    async def _run_batch(self) -> BatchSummary:
        summary = BatchSummary(started_at=self._clock.now())

        self._set_state(SchedulerState.SELECTING)
        cutoff = self._clock.now() - settings.update_interval
        try:
            links = await self._links.list_stale(cutoff, settings.batch_size)
        except PersistenceError as exc:
            return self._abort(summary, exc)
        summary.selected = len(links)
        if not links:
            logger.debug("No links need enrichment")

        self._set_state(SchedulerState.ENRICHING_BATCH)
        batch = _BatchRun(summary)
        semaphore = asyncio.Semaphore(settings.worker_concurrency)
        await asyncio.gather(*(self._process_link(link, semaphore, batch) for link in links))

        self._set_state(SchedulerState.COMMITTING)
        if batch.store_error is not None:
            return self._abort(summary, batch.store_error)

        summary.deferred_repository = batch.deferred
        summary.finished_at = self._clock.now()
        self.run.consecutive_failures = 0
        self.run.runs_completed += 1
        logger.info(
            "Enrichment run finished: selected=%d success=%d partial=%d failure=%d skipped=%d%s",
            summary.selected,
            summary.counts[OutcomeKind.SUCCESS],
            summary.counts[OutcomeKind.PARTIAL],
            summary.counts[OutcomeKind.FAILURE],
            summary.skipped,
            " (repository calls deferred)" if batch.deferred else "",
        )
        return summary

    async def _process_link(
        self,
        link: LinkRecord,
        semaphore: asyncio.Semaphore,
        batch: _BatchRun,
    ) -> None:
        """Enrich and commit one link as soon as a pool slot is free."""
        async with semaphore:
            if self._stop.is_set() or batch.aborted:
                batch.summary.skipped += 1
                return
            try:
                plan = await self._service.enrich(link, skip_repository=batch.deferred)
            except Exception as exc:
                logger.exception("Unexpected error enriching link %s", link.id)
                batch.summary.record(_internal_failure(link, exc))
                return
            if plan.rate_limited is not None:
                batch.defer(plan.rate_limited.retry_after)
            if batch.aborted:
                batch.summary.skipped += 1
                return

            try:
                outcome = await self._service.commit(plan)
            except PersistenceError as exc:
                if batch.store_error is None:
                    batch.store_error = exc
                return
            except LinkNotFound:
                logger.info("Link %s was deleted during the run; skipping", link.id)
                batch.summary.skipped += 1
                return
            except Exception as exc:
                logger.exception("Unexpected error committing link %s", link.id)
                outcome = _internal_failure(link, exc)
            batch.summary.record(outcome)
            self.run.cursor = link.id

    def _abort(self, summary: BatchSummary, exc: PersistenceError) -> BatchSummary:
        self.run.consecutive_failures += 1
        summary.aborted = True
        summary.error = str(exc)
        summary.finished_at = self._clock.now()
        logger.error(
            "Enrichment run aborted, Link Store unavailable (%d in a row): %s",
            self.run.consecutive_failures,
            exc,
        )
        return summary

    def _set_state(self, state: SchedulerState) -> None:
        if not self._stop.is_set():
            self.state = state


def _internal_failure(link: LinkRecord, exc: Exception) -> EnrichmentOutcome:
    return EnrichmentOutcome(
        link_id=link.id,
        kind=OutcomeKind.FAILURE,
        error_kind=ErrorKind.INTERNAL,
        detail=repr(exc),
    )
