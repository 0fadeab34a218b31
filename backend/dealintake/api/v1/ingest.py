"""Operator endpoints for the ingestion scheduler.

Lets an operator list the source catalog with per-source runtime state and
enqueue manual runs. Every route requires the ``X-Ingest-Key`` header.
Source enablement itself is configuration and cannot be changed here.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from dealintake.core.exceptions import SourceDisabledError, SourceNotFoundError
from dealintake.dependencies import get_scheduler, verify_ingest_key
from dealintake.ingestion.scheduler import IngestionScheduler, ScheduledJob
from dealintake.schemas.ingest import (
    BulkTriggerResponse,
    LastRunResponse,
    SourceListResponse,
    SourceStatusResponse,
    TriggerResponse,
)

router = APIRouter(dependencies=[Depends(verify_ingest_key)])
logger = structlog.get_logger(__name__)


def _to_trigger_response(job: ScheduledJob) -> TriggerResponse:
    return TriggerResponse(
        source_key=job.source_key,
        trigger_kind=job.trigger_kind.value,
        job_id=job.job_id,
    )


@router.get("/sources", response_model=SourceListResponse)
async def list_sources(scheduler: IngestionScheduler = Depends(get_scheduler)):
    """List every catalog source, enabled ones with their runtime state."""
    jobs = scheduler.get_jobs_status()

    sources = []
    for source in scheduler.registry:
        job = jobs.get(source.key) or {}
        last = job.get("last_result")
        sources.append(
            SourceStatusResponse(
                key=source.key,
                type=source.type.value,
                enabled=source.enabled,
                priority=source.priority,
                schedule=source.schedule,
                rate_limit_max_requests=source.rate_limit.max_requests,
                rate_limit_window_ms=source.rate_limit.window_ms,
                content_kind=source.content_kind,
                state=job.get("state"),
                next_run=job.get("next_run"),
                dropped_cycles=job.get("dropped_cycles", 0),
                circuit_state=(job.get("circuit") or {}).get("state"),
                inserted_today=job.get("inserted_today", 0),
                last_result=LastRunResponse(**last) if last else None,
            )
        )

    return SourceListResponse(sources=sources, scheduler_running=scheduler.is_running())


@router.post(
    "/sources/{source_key}/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_source(source_key: str, scheduler: IngestionScheduler = Depends(get_scheduler)):
    """Enqueue one immediate run of a source.

    Returns 404 for an unknown source and 409 for a disabled one; nothing is
    enqueued in either case.
    """
    try:
        job = scheduler.trigger_ingestion(source_key)
    except SourceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except SourceDisabledError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    logger.info("manual_trigger_requested", source_key=source_key, job_id=job.job_id)
    return _to_trigger_response(job)


@router.post(
    "/trigger-all",
    response_model=BulkTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_all(scheduler: IngestionScheduler = Depends(get_scheduler)):
    """Enqueue one immediate run per enabled source."""
    result = scheduler.trigger_all_sources()
    return BulkTriggerResponse(
        jobs=[_to_trigger_response(job) for job in result.jobs],
        failures=result.failures,
    )
