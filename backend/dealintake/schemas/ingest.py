"""Pydantic schemas for the operator ingestion endpoints."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatsResponse(BaseModel):
    """Item counts of one ingestion run."""

    fetched: int = 0
    normalized: int = 0
    inserted: int = 0
    skipped: int = 0
    errored: int = 0
    capped: int = 0


class LastRunResponse(JobStatsResponse):
    status: str
    completed_at: Optional[str] = None
    error: Optional[str] = None


class SourceStatusResponse(BaseModel):
    """Catalog entry for one source plus its runtime state."""

    key: str
    type: str
    enabled: bool
    priority: int
    schedule: Optional[str] = Field(None, description="Five-field cron; none for push-driven sources")
    rate_limit_max_requests: int
    rate_limit_window_ms: int
    content_kind: str
    state: Optional[str] = Field(None, description="idle / running / completed / failed")
    next_run: Optional[str] = None
    dropped_cycles: int = 0
    circuit_state: Optional[str] = Field(None, description="closed / open / half_open")
    inserted_today: int = 0
    last_result: Optional[LastRunResponse] = None


class SourceListResponse(BaseModel):
    sources: List[SourceStatusResponse]
    scheduler_running: bool


class TriggerResponse(BaseModel):
    """A manual run that was enqueued."""

    source_key: str
    trigger_kind: str
    job_id: str


class BulkTriggerResponse(BaseModel):
    """Result of triggering every enabled source."""

    jobs: List[TriggerResponse]
    failures: Dict[str, str] = {}
