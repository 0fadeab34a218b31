"""Deal ingestion system.

This package provides:
- The immutable source registry and the default source catalog
- Fetchers for feed, API, scraper and inbound chat sources
- The normalizer and the near-duplicate filter
- The pipeline and the APScheduler-based scheduler that drives it
"""

from .base import BaseFetcher, BaseHTTPFetcher, CanonicalItem, RawCandidate, SourceType
from .registry import RateLimitSpec, SourceDefinition, SourceRegistry

__all__ = [
    # Base classes
    "BaseFetcher",
    "BaseHTTPFetcher",
    # Data structures
    "CanonicalItem",
    "RawCandidate",
    "SourceType",
    # Registry
    "RateLimitSpec",
    "SourceDefinition",
    "SourceRegistry",
]
