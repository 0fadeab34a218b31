"""Health check endpoint."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from dealintake.dependencies import get_db, get_optional_scheduler
from dealintake.ingestion.scheduler import IngestionScheduler
from dealintake.schemas import HealthCheckResponse

router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    scheduler: Optional[IngestionScheduler] = Depends(get_optional_scheduler),
):
    """Return worker health.

    Checks database connectivity and whether the ingestion scheduler is
    running.
    """
    services = {}

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        db_status = "ok"
    except Exception as e:
        db_status = f"error: {str(e)}"
    services["database"] = db_status

    if scheduler is None:
        scheduler_status = "disabled"
    elif scheduler.is_running():
        scheduler_status = "ok"
    else:
        scheduler_status = "error: not running"
    services["scheduler"] = scheduler_status

    overall_status = "ok" if all(s in ("ok", "disabled") for s in services.values()) else "degraded"

    return HealthCheckResponse(
        status=overall_status,
        database=db_status,
        scheduler=scheduler_status,
        services=services,
    )
