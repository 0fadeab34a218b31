"""Immutable catalog of ingestion sources.

The registry is built once at startup (see ``catalog.build_default_registry``)
and only read afterwards. Turning a source on or off is a configuration
change followed by a restart.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from dealintake.core.exceptions import ConfigError, SourceNotFoundError
from dealintake.ingestion.base import SourceType


@dataclass(frozen=True)
class RateLimitSpec:
    """At most ``max_requests`` fetches per ``window_ms`` milliseconds."""

    max_requests: int
    window_ms: int

    def __post_init__(self):
        if self.max_requests < 1 or self.window_ms < 1:
            raise ConfigError(
                f"Invalid rate limit {self.max_requests}/{self.window_ms}ms"
            )


@dataclass(frozen=True)
class SourceDefinition:
    """One configured source of candidates.

    ``schedule`` is a five-field cron expression; push-driven inbound sources
    have none. ``fetcher_ref`` selects a specific fetcher class registered
    with the factory and defaults to the one registered for ``type``.
    """

    key: str
    type: SourceType
    enabled: bool
    priority: int
    schedule: Optional[str]
    rate_limit: RateLimitSpec
    fetcher_ref: Optional[str] = None
    config: Mapping[str, Any] = field(default_factory=dict)
    content_kind: str = "deal"
    daily_cap: Optional[int] = None

    def __post_init__(self):
        # Freeze the nested config so the definition stays read-only
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))
        if self.content_kind not in ("deal", "coupon"):
            raise ConfigError(f"Invalid content kind for {self.key}: {self.content_kind}")

    @property
    def is_push_driven(self) -> bool:
        return self.type == SourceType.INBOUND


def validate_cron(expression: str) -> None:
    """Raise ConfigError unless ``expression`` is valid five-field cron."""
    if len(expression.split()) != 5:
        raise ConfigError(f"Cron expression must have five fields: {expression!r}")
    try:
        CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError as e:
        raise ConfigError(f"Invalid cron expression {expression!r}: {e}") from e


class SourceRegistry:
    """Read-only lookup over a fixed set of SourceDefinitions."""

    def __init__(self, sources: Iterable[SourceDefinition]):
        by_key: Dict[str, SourceDefinition] = {}
        for source in sources:
            if source.key in by_key:
                raise ConfigError(f"Duplicate source key: {source.key}")
            if source.schedule is not None:
                validate_cron(source.schedule)
            elif not source.is_push_driven:
                raise ConfigError(f"Source {source.key} needs a cron schedule")
            by_key[source.key] = source

        self._sources: Mapping[str, SourceDefinition] = MappingProxyType(by_key)
        self._enabled: Tuple[SourceDefinition, ...] = tuple(
            sorted(
                (s for s in by_key.values() if s.enabled),
                key=lambda s: (s.priority, s.key),
            )
        )

    def list_enabled(self) -> List[SourceDefinition]:
        """Enabled sources by priority ascending, then key."""
        return list(self._enabled)

    def get(self, key: str) -> SourceDefinition:
        try:
            return self._sources[key]
        except KeyError:
            raise SourceNotFoundError(key) from None

    def is_enabled(self, key: str) -> bool:
        source = self._sources.get(key)
        return bool(source and source.enabled)

    def by_type(self, source_type: SourceType) -> List[SourceDefinition]:
        return [s for s in self._sources.values() if s.type == source_type]

    def keys(self) -> List[str]:
        return sorted(self._sources)

    def __contains__(self, key: object) -> bool:
        return key in self._sources

    def __iter__(self) -> Iterator[SourceDefinition]:
        return iter(sorted(self._sources.values(), key=lambda s: (s.priority, s.key)))

    def __len__(self) -> int:
        return len(self._sources)
