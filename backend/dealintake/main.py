"""Savebucks ingestion worker -- FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from dealintake.api.v1.router import api_v1_router
from dealintake.config import Settings, settings
from dealintake.db.session import async_session_factory, engine
from dealintake.ingestion.base import SourceType
from dealintake.ingestion.catalog import build_default_registry
from dealintake.ingestion.deduplicator import DedupPolicy, Deduplicator
from dealintake.ingestion.factory import FetcherFactory
from dealintake.ingestion.fetchers.inbound import InboundFetcher
from dealintake.ingestion.pipeline import IngestionPipeline
from dealintake.ingestion.scheduler import IngestionScheduler
from dealintake.ingestion.telegram import TelegramPoller
from dealintake.logging_conf import configure_logging
from dealintake.models import Base
from dealintake.services.deal_store import SqlAlchemyDealStore
from dealintake.services.run_service import IngestionRunService

logger = configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)


async def init_db(db_engine: AsyncEngine) -> None:
    """Create tables; on PostgreSQL also the pg_trgm extension the title index needs."""
    if db_engine.dialect.name == "postgresql":
        async with db_engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS pg_trgm"))
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_verified", dialect=db_engine.dialect.name)


def build_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    config: Optional[Settings] = None,
    fetcher_factory: Optional[FetcherFactory] = None,
) -> IngestionScheduler:
    """Wire registry, store, deduplicator, pipeline and scheduler together."""
    config = config or settings
    registry = build_default_registry(config)
    store = SqlAlchemyDealStore(session_factory)
    deduplicator = Deduplicator(store, DedupPolicy.from_settings(config))
    pipeline = IngestionPipeline.from_settings(deduplicator, config)
    return IngestionScheduler(
        registry=registry,
        pipeline=pipeline,
        fetcher_factory=fetcher_factory or FetcherFactory(config),
        run_service=IngestionRunService(session_factory),
        max_concurrent_jobs=config.INGEST_MAX_CONCURRENT_JOBS,
    )


def build_telegram_poller(scheduler: IngestionScheduler, config: Settings) -> Optional[TelegramPoller]:
    """Poller for the enabled inbound source, if a bot token is configured."""
    if not config.TELEGRAM_BOT_TOKEN:
        return None
    for source in scheduler.registry.by_type(SourceType.INBOUND):
        if not source.enabled:
            continue
        fetcher = scheduler.get_fetcher(source.key)
        if isinstance(fetcher, InboundFetcher):
            return TelegramPoller(
                config.TELEGRAM_BOT_TOKEN,
                fetcher,
                on_messages=lambda key=source.key: scheduler.trigger_ingestion(key),
                poll_timeout=config.TELEGRAM_POLL_TIMEOUT,
            )
    return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    logger.info("worker_starting", environment=settings.ENVIRONMENT, debug=settings.DEBUG)

    try:
        await init_db(engine)
    except Exception as e:
        logger.error("database_init_failed", error=str(e), exc_info=True)

    scheduler: Optional[IngestionScheduler] = None
    poller: Optional[TelegramPoller] = None

    # No background jobs in the test environment
    if settings.ENVIRONMENT != "test":
        scheduler = build_scheduler(async_session_factory)
        scheduler.start()
        scheduler.load_recurring_jobs()

        if settings.INGEST_RUN_ON_STARTUP:
            # The boot run does not spend the permit the first cron tick needs
            scheduler.trigger_all_sources(charge_rate_limit=False)

        poller = build_telegram_poller(scheduler, settings)
        if poller is not None:
            poller.start()
    else:
        logger.info("scheduler_disabled", reason="test_environment")

    app.state.scheduler = scheduler

    yield

    logger.info("worker_stopping")
    if poller is not None:
        await poller.stop()
    if scheduler is not None:
        await scheduler.aclose()
    await engine.dispose()


app = FastAPI(
    title="Savebucks Ingestion Worker",
    description="Scheduled deal and coupon ingestion with near-duplicate filtering",
    version="0.1.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "name": "Savebucks Ingestion Worker",
        "version": "0.1.0",
        "health": "/api/v1/health",
    }
