"""Pydantic schemas for request/response validation."""

from dealintake.schemas.health import HealthCheckResponse
from dealintake.schemas.ingest import (
    BulkTriggerResponse,
    JobStatsResponse,
    LastRunResponse,
    SourceListResponse,
    SourceStatusResponse,
    TriggerResponse,
)

__all__ = [
    "HealthCheckResponse",
    "BulkTriggerResponse",
    "JobStatsResponse",
    "LastRunResponse",
    "SourceListResponse",
    "SourceStatusResponse",
    "TriggerResponse",
]
