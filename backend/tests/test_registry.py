"""Tests for the source registry and the default catalog."""

from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.triggers.cron import CronTrigger

from conftest import make_source
from dealintake.config import Settings
from dealintake.core.exceptions import ConfigError, SourceNotFoundError
from dealintake.ingestion.base import SourceType
from dealintake.ingestion.catalog import build_default_registry, default_sources
from dealintake.ingestion.registry import RateLimitSpec, SourceRegistry, validate_cron


class TestSourceRegistry:

    def test_list_enabled_orders_by_priority_then_key(self):
        registry = SourceRegistry([
            make_source("zeta", priority=1),
            make_source("alpha", priority=2),
            make_source("beta", priority=1),
            make_source("off", priority=0, enabled=False),
        ])

        assert [s.key for s in registry.list_enabled()] == ["beta", "zeta", "alpha"]

    def test_get_and_lookup(self):
        registry = SourceRegistry([make_source("a"), make_source("b", enabled=False)])

        assert registry.get("a").key == "a"
        assert registry.is_enabled("a")
        assert not registry.is_enabled("b")
        assert not registry.is_enabled("missing")
        assert "b" in registry
        assert len(registry) == 2

    def test_get_unknown_raises(self):
        registry = SourceRegistry([make_source("a")])

        with pytest.raises(SourceNotFoundError) as exc:
            registry.get("nope")
        assert exc.value.source_key == "nope"

    def test_duplicate_keys_rejected(self):
        with pytest.raises(ConfigError):
            SourceRegistry([make_source("a"), make_source("a")])

    def test_pull_source_needs_schedule(self):
        with pytest.raises(ConfigError):
            SourceRegistry([make_source("a", schedule=None)])

    def test_inbound_source_without_schedule(self, inbound_source):
        registry = SourceRegistry([inbound_source])

        source = registry.get("test_inbound")
        assert source.is_push_driven
        assert registry.by_type(SourceType.INBOUND) == [source]

    def test_invalid_cron_rejected(self):
        with pytest.raises(ConfigError):
            SourceRegistry([make_source("a", schedule="every five minutes")])

    def test_definitions_are_read_only(self, feed_source):
        with pytest.raises(Exception):
            feed_source.enabled = False
        with pytest.raises(TypeError):
            feed_source.config["feed_url"] = "https://other.example.com"

    def test_invalid_content_kind(self):
        with pytest.raises(ConfigError):
            make_source("a", content_kind="voucher")


class TestValidation:

    @pytest.mark.parametrize("expression", ["*/25 * * * *", "0 */3 * * *", "15 6 * * 1-5"])
    def test_valid_cron(self, expression):
        validate_cron(expression)

    @pytest.mark.parametrize("expression", ["* * * *", "*/5 * * * * *", "61 * * * *", "abc def ghi jkl mno"])
    def test_invalid_cron(self, expression):
        with pytest.raises(ConfigError):
            validate_cron(expression)

    @pytest.mark.parametrize("max_requests,window_ms", [(0, 1000), (5, 0)])
    def test_rate_limit_must_be_positive(self, max_requests, window_ms):
        with pytest.raises(ConfigError):
            RateLimitSpec(max_requests=max_requests, window_ms=window_ms)


class TestDefaultCatalog:

    def test_default_enablement(self):
        registry = build_default_registry(Settings())

        enabled = {s.key for s in registry.list_enabled()}
        assert {"slickdeals_rss", "slickdeals_coupons"} <= enabled
        assert "dealnews_rss" not in enabled
        assert "techbargains_rss" not in enabled
        assert "walmart_scraper" not in enabled

    def test_credentials_enable_partner_sources(self):
        config = Settings(
            CJ_API_KEY="key",
            CJ_WEBSITE_ID="123",
            IMPACT_ACCOUNT_SID="sid",
            IMPACT_AUTH_TOKEN="token",
            TELEGRAM_BOT_TOKEN="bot:token",
        )

        registry = build_default_registry(config)

        assert registry.is_enabled("cj_affiliate")
        assert registry.is_enabled("impact")
        assert registry.is_enabled("telegram")
        assert registry.get("telegram").schedule is None

    def test_every_pull_source_has_valid_schedule(self):
        registry = build_default_registry(Settings())

        for source in registry:
            if source.is_push_driven:
                continue
            validate_cron(source.schedule)

    def test_single_request_windows_fit_between_cron_ticks(self):
        start = datetime(2026, 3, 2, tzinfo=timezone.utc)

        for source in default_sources(Settings()):
            if source.is_push_driven or source.rate_limit.max_requests != 1:
                continue
            trigger = CronTrigger.from_crontab(source.schedule, timezone="UTC")
            fire_times = []
            previous = None
            now = start
            while now < start + timedelta(days=1):
                now = trigger.get_next_fire_time(previous, now)
                fire_times.append(now)
                previous = now
                now = now + timedelta(seconds=1)

            min_gap = min((b - a).total_seconds() for a, b in zip(fire_times, fire_times[1:]))
            assert source.rate_limit.window_ms / 1000 < min_gap, source.key

    def test_enable_and_disable_overrides(self):
        config = Settings(
            INGEST_ENABLED_SOURCES="dealnews_rss",
            INGEST_DISABLED_SOURCES="slickdeals_coupons",
        )

        registry = build_default_registry(config)

        assert registry.is_enabled("dealnews_rss")
        assert not registry.is_enabled("slickdeals_coupons")

    def test_unknown_override_rejected(self):
        with pytest.raises(ConfigError):
            build_default_registry(Settings(INGEST_ENABLED_SOURCES="nonexistent"))

    def test_content_kinds(self):
        registry = build_default_registry(Settings())

        assert registry.get("dealnews_coupons").content_kind == "coupon"
        assert registry.get("slickdeals_rss").content_kind == "deal"
