"""Base fetcher interface and the records that flow through ingestion.

Every source type (feed, api, scraper, inbound) has one fetcher
implementation inheriting from BaseFetcher. A fetcher only retrieves raw
records; turning them into store-ready items is the normalizer's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Mapping, Optional

import httpx
import structlog

from dealintake.core.exceptions import FetchError
from dealintake.ingestion.utils.retry import http_retrying


class SourceType(str, Enum):
    """Kinds of ingestion source, one fetcher implementation each."""

    FEED = "feed"
    API = "api"
    SCRAPER = "scraper"
    INBOUND = "inbound"


@dataclass(frozen=True)
class RawCandidate:
    """A record as a fetcher found it, before normalization.

    ``payload`` layout depends on ``kind``: feed entries and API records carry
    structured fields (title, link/url, price, merchant, image_url), scraped
    fragments and inbound messages carry free ``text``.
    """

    kind: SourceType
    source_key: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalItem:
    """Normalized deal or coupon, ready for duplicate checking and insert."""

    title: str
    url: str
    source_key: str
    created_at: datetime
    price: Optional[Decimal] = None
    merchant: Optional[str] = None
    image_url: Optional[str] = None
    submitter_note: Optional[str] = None
    kind: str = "deal"

    def __post_init__(self):
        """Validate data after initialization."""
        if not self.title or not self.title.strip():
            raise ValueError("title is required")
        if not self.url:
            raise ValueError("url is required")
        if self.price is not None and self.price < 0:
            raise ValueError("price must be a non-negative Decimal")
        if self.kind not in ("deal", "coupon"):
            raise ValueError(f"Invalid kind: {self.kind}")


class BaseFetcher(ABC):
    """Abstract base class for all source fetchers.

    Fetchers are built once per source when the scheduler registers it and
    are reused for every cycle. The factory injects the source's rate limiter
    (and, for scrapers, the proxy manager).
    """

    source_type: SourceType

    def __init__(self, source_key: str):
        self.source_key = source_key
        self.rate_limiter = None  # Injected by FetcherFactory
        self.logger = structlog.get_logger(__name__).bind(
            fetcher=self.source_type.value, source_key=source_key
        )

    @abstractmethod
    async def fetch(self, config: Mapping[str, Any]) -> List[RawCandidate]:
        """Retrieve the current batch of raw records.

        Args:
            config: Type-specific source configuration from the registry

        Returns:
            Raw candidates in upstream order (possibly empty)

        Raises:
            FetchError: On network, timeout, HTTP status or parse failure
        """

    async def aclose(self) -> None:
        """Release network resources held by the fetcher."""


class BaseHTTPFetcher(BaseFetcher):
    """Fetcher that talks HTTP through httpx with retry and back-off.

    An ``http_client`` may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise a client is created lazily and owned
    by the fetcher.
    """

    def __init__(
        self,
        source_key: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_min_wait: float = 2.0,
        user_agent: Optional[str] = None,
    ):
        super().__init__(source_key)
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_min_wait = retry_min_wait
        self.user_agent = user_agent
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
            )
        return self._client

    async def _request(
        self,
        method: str,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request, retrying transient failures.

        Raises:
            FetchError: When the request still fails after the last attempt
        """
        client = client or self._get_client()
        headers = dict(kwargs.pop("headers", None) or {})
        if self.user_agent:
            headers.setdefault("User-Agent", self.user_agent)

        response = None
        try:
            async for attempt in http_retrying(
                max_attempts=self.max_attempts,
                min_wait=self.retry_min_wait,
                max_wait=max(self.retry_min_wait, 30.0),
            ):
                with attempt:
                    response = await client.request(
                        method, url, headers=headers, timeout=self.timeout, **kwargs
                    )
                    response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(self.source_key, f"timeout requesting {url}") from e
        except httpx.HTTPStatusError as e:
            raise FetchError(
                self.source_key, f"HTTP {e.response.status_code} from {url}"
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(self.source_key, f"{type(e).__name__}: {e}") from e

        return response

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
