"""APScheduler-based ingestion scheduler.

Runs each enabled source's pipeline on its cron schedule and on demand.
Per source it keeps a rate limiter, a single-flight lock and an explicit
job state; across sources a semaphore bounds how many jobs run at once.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dealintake.core.exceptions import DealIntakeException, SourceDisabledError
from dealintake.ingestion.base import BaseFetcher
from dealintake.ingestion.factory import FetcherFactory
from dealintake.ingestion.pipeline import IngestionPipeline, JobResult
from dealintake.ingestion.registry import SourceDefinition, SourceRegistry
from dealintake.ingestion.utils.circuit_breaker import CircuitBreaker
from dealintake.ingestion.utils.rate_limiter import SlidingWindowRateLimiter
from dealintake.services.run_service import IngestionRunService

logger = structlog.get_logger(__name__)


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    JobState.IDLE: {JobState.RUNNING},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: {JobState.IDLE},
    JobState.FAILED: {JobState.IDLE},
}


class TriggerKind(str, Enum):
    RECURRING = "recurring"
    MANUAL = "manual"


@dataclass(frozen=True)
class ScheduledJob:
    """Handle for an enqueued or registered job."""

    source_key: str
    trigger_kind: TriggerKind
    job_id: str


@dataclass
class BulkTriggerResult:
    """Jobs enqueued by trigger_all_sources and the sources that failed."""

    jobs: List[ScheduledJob] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


def recurring_job_id(source_key: str) -> str:
    """Stable job id so re-registering a schedule replaces, never duplicates."""
    return f"scheduled-{source_key}"


@dataclass
class SourceState:
    """Runtime state the scheduler keeps for one enabled source."""

    source: SourceDefinition
    fetcher: BaseFetcher
    limiter: SlidingWindowRateLimiter
    breaker: CircuitBreaker
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    state: JobState = JobState.IDLE
    last_result: Optional[JobResult] = None
    dropped_cycles: int = 0

    def transition(self, new_state: JobState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid job state transition for {self.source.key}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state


class IngestionScheduler:
    """Manages recurring and manual ingestion jobs using APScheduler.

    This scheduler:
    - Registers one cron job per scheduled source under a stable id
    - Enqueues one-off manual runs, failing fast on unknown or disabled sources
    - Never runs two jobs of the same source at once
    - Drops a cycle instead of queueing when the source's rate limit is spent
    - Drops cycles while a source's circuit breaker is open
    - Records every executed job to the ingestion_runs table
    - Handles errors without stopping the scheduler
    """

    def __init__(
        self,
        registry: SourceRegistry,
        pipeline: IngestionPipeline,
        fetcher_factory: FetcherFactory,
        run_service: Optional[IngestionRunService] = None,
        max_concurrent_jobs: int = 3,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        """Initialize the ingestion scheduler.

        Args:
            registry: Immutable source catalog
            pipeline: Fetch → normalize → dedupe → insert pipeline
            fetcher_factory: Builds one fetcher per enabled source
            run_service: Job bookkeeping; runs are not recorded when None
            max_concurrent_jobs: Worker pool size across all sources
            scheduler: APScheduler instance (a UTC AsyncIOScheduler when None)
        """
        self.registry = registry
        self.pipeline = pipeline
        self.fetcher_factory = fetcher_factory
        self.run_service = run_service
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="ingestion_scheduler")
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_jobs))

        self._states: Dict[str, SourceState] = {}
        for source in registry.list_enabled():
            limiter = fetcher_factory.create_rate_limiter(source)
            fetcher = fetcher_factory.create_fetcher(source, rate_limiter=limiter)
            self._states[source.key] = SourceState(
                source=source,
                fetcher=fetcher,
                limiter=limiter,
                breaker=fetcher_factory.create_circuit_breaker(source),
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler.

        Jobs registered before start fire once the scheduler is running.
        """
        if not self.scheduler.running:
            self.scheduler.start()
            self.logger.info("scheduler_started")
        else:
            self.logger.warning("scheduler_already_running")

    def stop(self) -> None:
        """Stop the scheduler without waiting for in-flight jobs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    async def aclose(self) -> None:
        """Stop scheduling and release fetcher resources."""
        if self.scheduler.running:
            self.stop()
        for state in self._states.values():
            await state.fetcher.aclose()

    def is_running(self) -> bool:
        return self.scheduler.running

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_recurring(self, source_key: str) -> ScheduledJob:
        """Register (or re-register) the cron job for one source.

        Registering twice under the same id updates the existing trigger, so
        exactly one recurring job exists per source.

        Raises:
            SourceNotFoundError: Unknown source key
            SourceDisabledError: The source is not enabled
            DealIntakeException: The source is push-driven and has no schedule
        """
        state = self._get_state(source_key)
        source = state.source
        if source.schedule is None:
            raise DealIntakeException(f"Source {source_key} has no cron schedule")

        job_id = recurring_job_id(source_key)
        trigger = CronTrigger.from_crontab(source.schedule, timezone="UTC")

        if self.scheduler.get_job(job_id) is not None:
            job = self.scheduler.reschedule_job(job_id, trigger=trigger)
            self.logger.info("recurring_job_updated", source_key=source_key, job_id=job_id)
        else:
            job = self.scheduler.add_job(
                func=self._run_job_wrapper,
                trigger=trigger,
                args=[source_key, TriggerKind.RECURRING.value, job_id],
                id=job_id,
                name=job_id,
                replace_existing=True,
                max_instances=1,  # Prevent concurrent runs of the same source
                coalesce=True,
            )
            self.logger.info(
                "recurring_job_added",
                source_key=source_key,
                job_id=job_id,
                schedule=source.schedule,
                next_run=_next_run(job),
            )

        return ScheduledJob(source_key=source_key, trigger_kind=TriggerKind.RECURRING, job_id=job.id)

    def load_recurring_jobs(self) -> int:
        """Register cron jobs for every enabled, pull-driven source.

        Returns:
            Number of recurring jobs registered
        """
        count = 0
        for source in self.registry.list_enabled():
            if source.is_push_driven or source.schedule is None:
                continue
            self.register_recurring(source.key)
            count += 1
        self.logger.info("recurring_jobs_loaded", count=count)
        return count

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    def trigger_ingestion(self, source_key: str, charge_rate_limit: bool = True) -> ScheduledJob:
        """Enqueue a one-off run of ``source_key`` to start immediately.

        Independent of the recurring schedule. Nothing is enqueued when the
        source is unknown or disabled. With ``charge_rate_limit`` False the
        run does not take a permit from the source's limiter, so it does not
        cost the next recurring tick its cycle.

        Raises:
            SourceNotFoundError: Unknown source key
            SourceDisabledError: The source is not enabled
        """
        self._get_state(source_key)

        job_id = f"manual-{source_key}-{uuid.uuid4().hex[:8]}"
        self.scheduler.add_job(
            func=self._run_job_wrapper,
            args=[source_key, TriggerKind.MANUAL.value, job_id],
            kwargs={"charge_rate_limit": charge_rate_limit},
            id=job_id,
            name=f"manual-{source_key}",
            misfire_grace_time=None,
            coalesce=True,
        )
        self.logger.info("manual_job_enqueued", source_key=source_key, job_id=job_id)
        return ScheduledJob(source_key=source_key, trigger_kind=TriggerKind.MANUAL, job_id=job_id)

    def trigger_all_sources(self, charge_rate_limit: bool = True) -> BulkTriggerResult:
        """Enqueue one manual run per enabled source.

        Returns once every job is enqueued, not once they finish. A failure
        to enqueue one source is collected and does not stop the others.
        The startup fan-out passes ``charge_rate_limit=False``.
        """
        result = BulkTriggerResult()
        for source in self.registry.list_enabled():
            try:
                result.jobs.append(
                    self.trigger_ingestion(source.key, charge_rate_limit=charge_rate_limit)
                )
            except Exception as e:
                result.failures[source.key] = str(e)
                self.logger.error("manual_job_enqueue_failed", source_key=source.key, error=str(e))

        self.logger.info(
            "all_sources_triggered",
            enqueued=len(result.jobs),
            failed=len(result.failures),
        )
        return result

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_job_wrapper(
        self,
        source_key: str,
        trigger_kind: str,
        job_id: str,
        charge_rate_limit: bool = True,
    ) -> None:
        """Entry point APScheduler calls; no exception escapes it."""
        try:
            await self.run_source(
                source_key,
                trigger_kind=trigger_kind,
                job_id=job_id,
                charge_rate_limit=charge_rate_limit,
            )
        except Exception as e:
            self.logger.error(
                "ingestion_job_crashed",
                source_key=source_key,
                job_id=job_id,
                error=str(e),
                exc_info=True,
            )

    async def run_source(
        self,
        source_key: str,
        trigger_kind: str = TriggerKind.MANUAL.value,
        job_id: Optional[str] = None,
        charge_rate_limit: bool = True,
    ) -> Optional[JobResult]:
        """Run one cycle for a source now.

        Returns:
            The JobResult, or None when the cycle was dropped because a run
            of this source is already in flight, its circuit is open or its
            rate limit is spent

        Raises:
            SourceNotFoundError: Unknown source key
            SourceDisabledError: The source is not enabled
        """
        state = self._get_state(source_key)
        log = self.logger.bind(source_key=source_key, job_id=job_id, trigger_kind=trigger_kind)

        # No await between this check and acquiring the lock below
        if state.lock.locked():
            state.dropped_cycles += 1
            log.info("ingestion_job_skipped", reason="in_flight")
            return None

        async with state.lock:
            if not state.breaker.can_execute():
                state.dropped_cycles += 1
                log.info(
                    "ingestion_job_skipped",
                    reason="circuit_open",
                    retry_after_seconds=round(state.breaker.seconds_until_retry(), 1),
                )
                return None

            if charge_rate_limit and not state.limiter.try_acquire():
                state.dropped_cycles += 1
                log.info(
                    "ingestion_job_skipped",
                    reason="rate_limited",
                    retry_after_seconds=round(state.limiter.seconds_until_available(), 1),
                )
                return None

            async with self._semaphore:
                result = await self._execute(state, trigger_kind, job_id)

            if result.succeeded:
                state.breaker.record_success()
            else:
                state.breaker.record_failure(result.error)
            return result

    async def _execute(
        self, state: SourceState, trigger_kind: str, job_id: Optional[str]
    ) -> JobResult:
        state.transition(JobState.RUNNING)
        try:
            run_id = None
            if self.run_service is not None:
                run_id = await self.run_service.start(state.source.key, trigger_kind, job_id)

            result = await self.pipeline.run(state.source, state.fetcher)
            state.last_result = result
            state.transition(JobState.COMPLETED if result.succeeded else JobState.FAILED)

            if self.run_service is not None:
                await self.run_service.complete(run_id, result)
            return result
        finally:
            if state.state == JobState.RUNNING:
                state.transition(JobState.FAILED)
            state.transition(JobState.IDLE)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _get_state(self, source_key: str) -> SourceState:
        state = self._states.get(source_key)
        if state is not None:
            return state
        # Raises SourceNotFoundError for unknown keys
        self.registry.get(source_key)
        raise SourceDisabledError(source_key)

    def get_fetcher(self, source_key: str) -> BaseFetcher:
        return self._get_state(source_key).fetcher

    def get_state(self, source_key: str) -> Optional[SourceState]:
        return self._states.get(source_key)

    def get_jobs_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-source status keyed by source key, for the operator API."""
        caps = self.pipeline.daily_caps
        inserted_today = caps.get_counts() if caps is not None else {}

        jobs: Dict[str, Dict[str, Any]] = {}
        for source_key, state in self._states.items():
            job = self.scheduler.get_job(recurring_job_id(source_key))
            last = state.last_result
            jobs[source_key] = {
                "state": state.state.value,
                "job_id": job.id if job else None,
                "next_run": _next_run(job) if job else None,
                "dropped_cycles": state.dropped_cycles,
                "rate_limit": state.limiter.get_status(),
                "circuit": state.breaker.get_status(),
                "inserted_today": inserted_today.get(source_key, 0),
                "last_result": None if last is None else {
                    "status": last.status,
                    "completed_at": last.completed_at.isoformat() if last.completed_at else None,
                    "error": last.error,
                    **last.stats.as_dict(),
                },
            }
        return jobs


def _next_run(job: Optional[Job]) -> Optional[str]:
    # Pending jobs (scheduler not started yet) have no next_run_time attribute
    next_run_time = getattr(job, "next_run_time", None)
    return next_run_time.isoformat() if next_run_time else None


__all__ = [
    "BulkTriggerResult",
    "IngestionScheduler",
    "JobState",
    "ScheduledJob",
    "SourceState",
    "TriggerKind",
    "recurring_job_id",
]
