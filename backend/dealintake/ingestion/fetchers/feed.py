"""RSS / Atom / RDF feed fetcher."""

import re
from typing import Any, Dict, List, Mapping, Optional

import feedparser
from bs4 import BeautifulSoup

from dealintake.core.exceptions import FetchError
from dealintake.ingestion.base import BaseHTTPFetcher, RawCandidate, SourceType

# Deal feed titles often end with the store in brackets: "... [amazon.com]"
_BRACKET_MERCHANT_RE = re.compile(r"\[([a-z0-9.-]+\.[a-z]{2,})\]\s*$", re.IGNORECASE)


def _entry_image(entry: Mapping[str, Any], summary: str) -> Optional[str]:
    """Image from media tags, an image enclosure, or the first summary <img>."""
    for key in ("media_content", "media_thumbnail"):
        for media in entry.get(key) or []:
            url = media.get("url")
            if url:
                return url

    for link in entry.get("links") or []:
        if link.get("rel") == "enclosure" and str(link.get("type", "")).startswith("image/"):
            return link.get("href")

    if summary and "<img" in summary:
        img = BeautifulSoup(summary, "lxml").find("img", src=True)
        if img:
            return img["src"]
    return None


def _summary_text(summary: str) -> str:
    if not summary:
        return ""
    return BeautifulSoup(summary, "lxml").get_text(" ", strip=True)


class FeedFetcher(BaseHTTPFetcher):
    """Pulls a syndication feed and emits one candidate per entry.

    Config keys:
        feed_url: Feed URL (required)
        headers: Extra request headers
        max_items: Optional cap on entries per cycle
    """

    source_type = SourceType.FEED

    async def fetch(self, config: Mapping[str, Any]) -> List[RawCandidate]:
        feed_url = config.get("feed_url")
        if not feed_url:
            raise FetchError(self.source_key, "feed_url is not configured")

        self.logger.info("fetching_feed", url=feed_url)
        response = await self._request("GET", feed_url, headers=config.get("headers"))

        if not response.content or not response.content.strip():
            self.logger.warning("feed_empty", url=feed_url)
            return []

        parsed = feedparser.parse(response.content)
        entries = parsed.entries or []
        if parsed.bozo and not entries:
            self.logger.warning(
                "feed_malformed",
                url=feed_url,
                error=str(parsed.get("bozo_exception")),
            )
            return []

        max_items = config.get("max_items")
        if max_items:
            entries = entries[:max_items]

        candidates = []
        for entry in entries:
            payload = self._entry_payload(entry)
            if not payload["link"] or not payload["title"]:
                continue
            candidates.append(
                RawCandidate(kind=SourceType.FEED, source_key=self.source_key, payload=payload)
            )

        self.logger.info("feed_parsed", url=feed_url, entries=len(entries), candidates=len(candidates))
        return candidates

    @staticmethod
    def _entry_payload(entry: Mapping[str, Any]) -> Dict[str, Any]:
        title = (entry.get("title") or "").strip()
        summary_html = entry.get("summary") or ""

        merchant = None
        bracket = _BRACKET_MERCHANT_RE.search(title)
        if bracket:
            merchant = bracket.group(1).lower()
            title = title[: bracket.start()].rstrip()

        return {
            "title": title,
            "link": (entry.get("link") or "").strip(),
            "summary": _summary_text(summary_html),
            "image_url": _entry_image(entry, summary_html),
            "merchant": merchant,
            "guid": entry.get("id") or entry.get("guid"),
            "published": entry.get("published") or entry.get("updated"),
        }
