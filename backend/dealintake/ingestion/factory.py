"""Factory for building fetcher instances for registered sources."""

from typing import Dict, Optional, Type

import httpx
import structlog

from dealintake.config import Settings, settings as default_settings
from dealintake.core.exceptions import ConfigError
from dealintake.ingestion.base import BaseFetcher, BaseHTTPFetcher, SourceType
from dealintake.ingestion.fetchers import APIFetcher, FeedFetcher, InboundFetcher, ScraperFetcher
from dealintake.ingestion.registry import SourceDefinition
from dealintake.ingestion.utils.circuit_breaker import CircuitBreaker
from dealintake.ingestion.utils.proxy_manager import ProxyManager
from dealintake.ingestion.utils.rate_limiter import SlidingWindowRateLimiter


logger = structlog.get_logger(__name__)


class FetcherFactory:
    """Creates and configures fetcher instances.

    Fetcher classes are registered explicitly under a reference string; by
    default each SourceType value maps to its generic fetcher. A
    SourceDefinition's ``fetcher_ref`` picks a different registered class.
    Shared services (HTTP settings, the proxy pool) are injected here.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        proxy_manager: Optional[ProxyManager] = None,
        retry_min_wait: float = 2.0,
    ):
        """Initialize the factory.

        Args:
            config: Settings to read HTTP and proxy options from
            http_client: Shared client for every HTTP fetcher (tests inject a
                client on httpx.MockTransport); each fetcher owns its own
                client when None
            proxy_manager: Proxy pool for scraper fetchers; built from
                PROXY_LIST when None
            retry_min_wait: Lower bound of the retry back-off, in seconds
        """
        self.config = config or default_settings
        self.http_client = http_client
        self.retry_min_wait = retry_min_wait

        if proxy_manager is None:
            proxy_manager = ProxyManager(self.config.get_proxy_list())
        self.proxy_manager = proxy_manager
        if proxy_manager:
            logger.info("proxy_manager_initialized", proxy_count=len(proxy_manager.entries))
        else:
            logger.info("proxy_manager_disabled", reason="no_proxies_configured")

        self._fetcher_registry: Dict[str, Type[BaseFetcher]] = {}
        self.register_fetcher(SourceType.FEED.value, FeedFetcher)
        self.register_fetcher(SourceType.API.value, APIFetcher)
        self.register_fetcher(SourceType.SCRAPER.value, ScraperFetcher)
        self.register_fetcher(SourceType.INBOUND.value, InboundFetcher)

    def register_fetcher(self, ref: str, fetcher_class: Type[BaseFetcher]) -> None:
        """Register a fetcher class under ``ref``.

        Raises:
            ValueError: If the class does not inherit from BaseFetcher
        """
        if not (isinstance(fetcher_class, type) and issubclass(fetcher_class, BaseFetcher)):
            raise ValueError(f"Fetcher class must inherit from BaseFetcher: {fetcher_class}")
        self._fetcher_registry[ref] = fetcher_class
        logger.debug("fetcher_registered", ref=ref, fetcher=fetcher_class.__name__)

    def create_rate_limiter(self, source: SourceDefinition) -> SlidingWindowRateLimiter:
        return SlidingWindowRateLimiter(
            max_requests=source.rate_limit.max_requests,
            window_ms=source.rate_limit.window_ms,
        )

    def create_circuit_breaker(self, source: SourceDefinition) -> CircuitBreaker:
        return CircuitBreaker(
            source.key,
            failure_threshold=self.config.CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout_seconds=self.config.CIRCUIT_RESET_TIMEOUT_SECONDS,
            success_threshold=self.config.CIRCUIT_SUCCESS_THRESHOLD,
            monitor_window_seconds=self.config.CIRCUIT_MONITOR_WINDOW_SECONDS,
        )

    def create_fetcher(
        self,
        source: SourceDefinition,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> BaseFetcher:
        """Create and configure the fetcher for ``source``.

        Raises:
            ConfigError: If no fetcher is registered for the source, or the
                registered class does not handle the source's type
        """
        ref = source.fetcher_ref or source.type.value
        fetcher_class = self._fetcher_registry.get(ref)
        if fetcher_class is None:
            raise ConfigError(f"No fetcher registered for '{ref}' (source {source.key})")
        if fetcher_class.source_type != source.type:
            raise ConfigError(
                f"Fetcher {fetcher_class.__name__} handles {fetcher_class.source_type.value}, "
                f"not {source.type.value} (source {source.key})"
            )

        if issubclass(fetcher_class, InboundFetcher):
            fetcher = fetcher_class(
                source.key,
                allowed_channels=source.config.get("allowed_channels", ()),
            )
        elif issubclass(fetcher_class, BaseHTTPFetcher):
            # Scrapers rotate browser agents unless the source pins one
            default_agent = None if issubclass(fetcher_class, ScraperFetcher) else self.config.HTTP_USER_AGENT
            fetcher = fetcher_class(
                source.key,
                http_client=self.http_client,
                timeout=self.config.HTTP_TIMEOUT_SECONDS,
                max_attempts=self.config.FETCH_MAX_ATTEMPTS,
                retry_min_wait=self.retry_min_wait,
                user_agent=source.config.get("user_agent") or default_agent,
            )
        else:
            fetcher = fetcher_class(source.key)

        # Inject dependencies
        fetcher.rate_limiter = rate_limiter or self.create_rate_limiter(source)
        if isinstance(fetcher, ScraperFetcher):
            fetcher.proxy_manager = self.proxy_manager

        logger.info("fetcher_created", source_key=source.key, fetcher=fetcher_class.__name__)
        return fetcher
