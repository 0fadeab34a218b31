"""Default source catalog for the deal ingestion worker.

Enablement follows the production deployment: the Slickdeals feeds are on,
feeds that stopped returning items are off, partner APIs switch on once
their credentials are configured and the Telegram channel once a bot token
is. ``INGEST_ENABLED_SOURCES`` / ``INGEST_DISABLED_SOURCES`` override
enablement per key at load time.

One-request windows sit a minute under the shortest gap between two cron
fire times, so scheduler jitter between consecutive ticks never costs a
cycle. Minute steps divide the hour evenly for the same reason.
"""

from dataclasses import replace
from typing import List, Optional

import structlog

from dealintake.config import Settings, settings as default_settings
from dealintake.core.exceptions import ConfigError
from dealintake.ingestion.base import SourceType
from dealintake.ingestion.registry import RateLimitSpec, SourceDefinition, SourceRegistry
from dealintake.ingestion.utils.user_agents import USER_AGENTS

logger = structlog.get_logger(__name__)


SLICKDEALS_FRONTPAGE_RSS = (
    "https://slickdeals.net/newsearch.php"
    "?mode=frontpage&searcharea=deals&searchin=first&rss=1"
)

# Some feeds answer 403 to non-browser agents
_BROWSER_HEADERS = {"User-Agent": USER_AGENTS[0]}


def default_sources(config: Settings) -> List[SourceDefinition]:
    """Catalog entries before environment overrides are applied."""
    cj_ready = bool(config.CJ_API_KEY and config.CJ_WEBSITE_ID)
    impact_ready = bool(config.IMPACT_ACCOUNT_SID and config.IMPACT_AUTH_TOKEN)

    return [
        # Feeds
        SourceDefinition(
            key="slickdeals_rss",
            type=SourceType.FEED,
            enabled=True,
            priority=1,
            schedule="*/20 * * * *",
            rate_limit=RateLimitSpec(max_requests=1, window_ms=1_140_000),
            config={"feed_url": SLICKDEALS_FRONTPAGE_RSS},
            daily_cap=200,
        ),
        SourceDefinition(
            key="dealnews_rss",
            type=SourceType.FEED,
            enabled=False,  # feed returns no items
            priority=2,
            schedule="*/15 * * * *",
            rate_limit=RateLimitSpec(max_requests=1, window_ms=840_000),
            config={"feed_url": "https://www.dealnews.com/rss/", "headers": _BROWSER_HEADERS},
        ),
        SourceDefinition(
            key="techbargains_rss",
            type=SourceType.FEED,
            enabled=False,  # permanently 403
            priority=3,
            schedule="0 */2 * * *",
            rate_limit=RateLimitSpec(max_requests=1, window_ms=7_140_000),
            config={"feed_url": "https://www.techbargains.com/rss", "headers": _BROWSER_HEADERS},
        ),
        # Coupon feeds
        SourceDefinition(
            key="slickdeals_coupons",
            type=SourceType.FEED,
            enabled=True,
            priority=2,
            schedule="*/20 * * * *",
            rate_limit=RateLimitSpec(max_requests=1, window_ms=1_140_000),
            config={"feed_url": SLICKDEALS_FRONTPAGE_RSS + "&q=coupon+code"},
            # Stored as deals so coupon posts share the deal review queue
            content_kind="deal",
            daily_cap=100,
        ),
        SourceDefinition(
            key="dealnews_coupons",
            type=SourceType.FEED,
            enabled=False,
            priority=2,
            schedule="*/30 * * * *",
            rate_limit=RateLimitSpec(max_requests=1, window_ms=1_740_000),
            config={
                "feed_url": "https://www.dealnews.com/c494/Coupons/rss/",
                "headers": _BROWSER_HEADERS,
            },
            content_kind="coupon",
        ),
        # Affiliate APIs
        SourceDefinition(
            key="cj_affiliate",
            type=SourceType.API,
            enabled=cj_ready,
            priority=1,
            schedule="*/30 * * * *",
            rate_limit=RateLimitSpec(max_requests=1000, window_ms=3_600_000),
            config={
                "endpoint": "https://link-search.api.cj.com/v2/link-search",
                "auth": {"scheme": "bearer", "token": config.CJ_API_KEY},
                "params": {"website-id": config.CJ_WEBSITE_ID, "promotion-type": "coupon"},
                "items_path": "links",
                "field_map": {
                    "title": "link-name",
                    "url": "clickUrl",
                    "merchant": "advertiser-name",
                    "price": "sale-price",
                },
                "page_param": "page-number",
                "page_size_param": "records-per-page",
                "page_size": 100,
                "max_pages": 5,
            },
        ),
        SourceDefinition(
            key="impact",
            type=SourceType.API,
            enabled=impact_ready,
            priority=1,
            schedule="0 */3 * * *",
            rate_limit=RateLimitSpec(max_requests=100, window_ms=60_000),
            config={
                "endpoint": (
                    f"https://api.impact.com/Mediapartners/{config.IMPACT_ACCOUNT_SID}/Deals"
                ),
                "auth": {
                    "scheme": "basic",
                    "username": config.IMPACT_ACCOUNT_SID,
                    "password": config.IMPACT_AUTH_TOKEN,
                },
                "items_path": "Deals",
                "field_map": {
                    "title": "Name",
                    "url": "TrackingLink",
                    "merchant": "CampaignName",
                    "price": "DiscountAmount",
                    "image_url": "ImageUrl",
                },
                "page_param": "Page",
                "page_size_param": "PageSize",
                "page_size": 100,
                "max_pages": 3,
            },
        ),
        # Scrapers
        SourceDefinition(
            key="walmart_scraper",
            type=SourceType.SCRAPER,
            enabled=False,
            priority=4,
            schedule="0 */8 * * *",
            rate_limit=RateLimitSpec(max_requests=5, window_ms=60_000),
            config={
                "page_url": "https://www.walmart.com/shop/deals",
                "use_proxy": True,
                "item_selector": "[data-item-id]",
                "link_selector": "a[href]",
                "title_selector": "[data-automation-id='product-title']",
                "price_selector": "[data-automation-id='product-price']",
                "image_selector": "img",
            },
        ),
        # Inbound chat channel
        SourceDefinition(
            key="telegram",
            type=SourceType.INBOUND,
            enabled=bool(config.TELEGRAM_BOT_TOKEN),
            priority=5,
            schedule=None,
            rate_limit=RateLimitSpec(max_requests=30, window_ms=60_000),
            config={"allowed_channels": tuple(config.get_allowed_channels())},
        ),
    ]


def build_default_registry(config: Optional[Settings] = None) -> SourceRegistry:
    """Build the registry from the catalog plus environment overrides.

    Raises:
        ConfigError: If an override names a source that does not exist
    """
    config = config or default_settings
    sources = {s.key: s for s in default_sources(config)}

    force_on = config.get_enabled_overrides()
    force_off = config.get_disabled_overrides()
    for key in force_on + force_off:
        if key not in sources:
            raise ConfigError(f"Unknown source in enable/disable override: {key}")

    for key in force_on:
        sources[key] = replace(sources[key], enabled=True)
    for key in force_off:
        sources[key] = replace(sources[key], enabled=False)

    registry = SourceRegistry(sources.values())
    logger.info(
        "source_registry_built",
        total=len(registry),
        enabled=[s.key for s in registry.list_enabled()],
    )
    return registry
