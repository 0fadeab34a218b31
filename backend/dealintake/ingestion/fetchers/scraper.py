"""HTML page scraper fetcher.

Least reliable of the fetchers: markup changes break it silently, which is
why scraper sources ship disabled.
"""

from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from dealintake.core.exceptions import FetchError
from dealintake.ingestion.base import BaseHTTPFetcher, RawCandidate, SourceType
from dealintake.ingestion.utils.proxy_manager import ProxyManager
from dealintake.ingestion.utils.user_agents import browser_headers


class ScraperFetcher(BaseHTTPFetcher):
    """Fetches one listing page and extracts deals by CSS selectors.

    Config keys:
        page_url: Listing page (required)
        item_selector: Selector for one deal block (required)
        link_selector / title_selector / price_selector / image_selector:
            Selectors evaluated inside each block
        use_proxy: Route the request through the proxy pool
        max_items: Optional cap on blocks per cycle
    """

    source_type = SourceType.SCRAPER

    def __init__(self, source_key: str, **kwargs: Any):
        super().__init__(source_key, **kwargs)
        self.proxy_manager: Optional[ProxyManager] = None  # Injected by FetcherFactory

    async def fetch(self, config: Mapping[str, Any]) -> List[RawCandidate]:
        page_url = config.get("page_url")
        item_selector = config.get("item_selector")
        if not page_url or not item_selector:
            raise FetchError(self.source_key, "page_url and item_selector are required")

        html = await self._fetch_page(page_url, use_proxy=bool(config.get("use_proxy")))
        soup = BeautifulSoup(html, "lxml")

        blocks = soup.select(item_selector)
        max_items = config.get("max_items")
        if max_items:
            blocks = blocks[:max_items]

        candidates = []
        for block in blocks:
            payload = self._extract(block, page_url, config)
            if payload is None:
                continue
            candidates.append(
                RawCandidate(kind=SourceType.SCRAPER, source_key=self.source_key, payload=payload)
            )

        self.logger.info("page_scraped", url=page_url, blocks=len(blocks), candidates=len(candidates))
        return candidates

    async def _fetch_page(self, page_url: str, use_proxy: bool) -> str:
        proxy = None
        if use_proxy and self.proxy_manager:
            proxy = self.proxy_manager.get_proxy()

        headers = browser_headers(self.user_agent)
        if proxy is None:
            response = await self._request("GET", page_url, headers=headers)
            return response.text

        self.logger.debug("scraping_via_proxy", url=page_url)
        async with httpx.AsyncClient(
            proxy=proxy, timeout=self.timeout, follow_redirects=True
        ) as client:
            try:
                response = await self._request("GET", page_url, client=client, headers=headers)
            except FetchError:
                self.proxy_manager.mark_failed(proxy)
                raise
        self.proxy_manager.mark_success(proxy)
        return response.text

    @staticmethod
    def _extract(block: Any, page_url: str, config: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        def select_one(key: str) -> Any:
            selector = config.get(key)
            return block.select_one(selector) if selector else None

        link = select_one("link_selector")
        if link is None and block.name == "a":
            link = block
        href = link.get("href") if link is not None else None
        if not href:
            return None

        title_node = select_one("title_selector") or link
        text = title_node.get_text(" ", strip=True)
        if not text:
            return None

        price_node = select_one("price_selector")
        image_node = select_one("image_selector")
        image_url = None
        if image_node is not None:
            image_url = image_node.get("src") or image_node.get("data-src")

        return {
            "text": text,
            "url": urljoin(page_url, href),
            "price_text": price_node.get_text(" ", strip=True) if price_node is not None else None,
            "image_url": urljoin(page_url, image_url) if image_url else None,
        }
