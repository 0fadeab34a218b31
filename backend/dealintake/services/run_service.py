"""Records ingestion job executions in the ingestion_runs table."""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dealintake.ingestion.pipeline import JobResult
from dealintake.models.ingestion_run import IngestionRun

logger = structlog.get_logger(__name__)


class IngestionRunService:
    """Writes one IngestionRun row per executed job.

    Bookkeeping must never fail a job, so database errors are logged and
    swallowed here.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="run_service")

    async def start(
        self,
        source_key: str,
        trigger_kind: str,
        job_id: Optional[str] = None,
    ) -> Optional[uuid.UUID]:
        """Create a run row with status running; returns its id."""
        run = IngestionRun(
            source_key=source_key,
            trigger_kind=trigger_kind,
            job_id=job_id,
            status="running",
        )
        try:
            async with self.session_factory() as db:
                db.add(run)
                await db.commit()
        except SQLAlchemyError as e:
            self.logger.error("ingestion_run_start_failed", source_key=source_key, error=str(e))
            return None
        return run.id

    async def complete(self, run_id: Optional[uuid.UUID], result: JobResult) -> None:
        """Store the outcome and counts of a finished run."""
        if run_id is None:
            return
        try:
            async with self.session_factory() as db:
                run = await db.get(IngestionRun, run_id)
                if run is None:
                    self.logger.warning("ingestion_run_missing", run_id=str(run_id))
                    return
                run.status = result.status
                run.started_at = result.started_at
                run.completed_at = result.completed_at
                run.duration_seconds = Decimal(str(round(result.duration_seconds, 2)))
                run.items_fetched = result.stats.fetched
                run.items_normalized = result.stats.normalized
                run.items_inserted = result.stats.inserted
                run.items_skipped = result.stats.skipped
                run.items_errored = result.stats.errored
                run.items_capped = result.stats.capped
                run.error_message = result.error
                run.error_traceback = result.error_traceback
                await db.commit()
        except SQLAlchemyError as e:
            self.logger.error("ingestion_run_complete_failed", run_id=str(run_id), error=str(e))
