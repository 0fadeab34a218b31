"""Ingestion utilities for throttling, retries, proxies and title similarity."""

from .rate_limiter import SlidingWindowRateLimiter
from .daily_cap import DailyCapTracker
from .circuit_breaker import CircuitBreaker, CircuitState
from .proxy_manager import ProxyManager, ProxyEntry
from .user_agents import get_random_user_agent, browser_headers, USER_AGENTS
from .retry import http_retrying, is_retryable_http_error, RETRYABLE_STATUS_CODES
from .similarity import similarity, trigrams


__all__ = [
    # Throttling
    "SlidingWindowRateLimiter",
    "DailyCapTracker",
    "CircuitBreaker",
    "CircuitState",
    # Proxy management
    "ProxyManager",
    "ProxyEntry",
    # User agents
    "get_random_user_agent",
    "browser_headers",
    "USER_AGENTS",
    # Retry
    "http_retrying",
    "is_retryable_http_error",
    "RETRYABLE_STATUS_CODES",
    # Similarity
    "similarity",
    "trigrams",
]
