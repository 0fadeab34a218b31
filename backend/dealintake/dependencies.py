"""FastAPI dependency injection providers."""

import secrets
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from dealintake.config import settings
from dealintake.db.session import async_session_factory
from dealintake.ingestion.scheduler import IngestionScheduler

logger = structlog.get_logger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session for request-scoped usage.

    The session is committed on success, rolled back on error and always
    closed after the request completes.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_scheduler(request: Request) -> IngestionScheduler:
    """The scheduler created by the application lifespan.

    Raises 503 while the worker runs without one (test environment or failed
    startup).
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ingestion scheduler is not running",
        )
    return scheduler


def get_optional_scheduler(request: Request) -> Optional[IngestionScheduler]:
    return getattr(request.app.state, "scheduler", None)


async def verify_ingest_key(x_ingest_key: str = Header(default="")) -> None:
    """Raise HTTP 403 unless ``X-Ingest-Key`` matches INGEST_API_KEY.

    The endpoints stay closed when no key is configured. Comparison uses
    ``secrets.compare_digest`` to avoid a timing oracle.
    """
    configured_key: str = settings.INGEST_API_KEY

    if not configured_key:
        logger.warning("ingest_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator endpoints are disabled (INGEST_API_KEY not configured)",
        )

    if not secrets.compare_digest(x_ingest_key.encode(), configured_key.encode()):
        logger.warning("ingest_api_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
