"""Fetcher implementations, one per source type."""

from dealintake.ingestion.fetchers.api import APIFetcher
from dealintake.ingestion.fetchers.feed import FeedFetcher
from dealintake.ingestion.fetchers.inbound import ChannelMessage, InboundFetcher
from dealintake.ingestion.fetchers.scraper import ScraperFetcher

__all__ = [
    "APIFetcher",
    "FeedFetcher",
    "ChannelMessage",
    "InboundFetcher",
    "ScraperFetcher",
]
