"""
Configuration for the scan pipeline.

This module controls:
- Crawl limits and politeness delays.
- Query research limits and the platform call policy.
- Dispatcher defaults for subscriptions with no schedule recorded.

Operational knobs are env-driven so they can be tuned per deployment without
a code change.
"""

from __future__ import annotations

import os
from typing import Tuple


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


# -----------------------------
# Crawler
# -----------------------------
CRAWLER_USER_AGENT = _env_str("OUTRANK_CRAWLER_USER_AGENT", "outrankllm-crawler/1.0")
CRAWL_TIMEOUT_S = _env_float("OUTRANK_CRAWL_TIMEOUT_S", 15.0)
CRAWL_MAX_SITEMAP_URLS = _env_int("OUTRANK_CRAWL_MAX_SITEMAP_URLS", 20)
CRAWL_MAX_DISCOVERED = _env_int("OUTRANK_CRAWL_MAX_DISCOVERED", 15)
CRAWL_MAX_PAGES = _env_int("OUTRANK_CRAWL_MAX_PAGES", 15)
CRAWL_DISCOVERY_DELAY_S = _env_float("OUTRANK_CRAWL_DISCOVERY_DELAY_S", 0.2)
CRAWL_PAGE_DELAY_S = _env_float("OUTRANK_CRAWL_PAGE_DELAY_S", 0.1)

# -----------------------------
# Query research
# -----------------------------
RESEARCH_QUERY_LIMIT = _env_int("OUTRANK_RESEARCH_QUERY_LIMIT", 7)
RESEARCH_MAX_TOKENS = _env_int("OUTRANK_RESEARCH_MAX_TOKENS", 800)

# Sequential by default; raise only if the provider's rate limits allow it.
PLATFORM_MAX_CONCURRENCY = _env_int("OUTRANK_PLATFORM_MAX_CONCURRENCY", 1)
PLATFORM_DELAY_S = _env_float("OUTRANK_PLATFORM_DELAY_S", 0.3)

# -----------------------------
# Dispatcher
# -----------------------------
DEFAULT_SCHEDULE_DAY = 1  # Monday
DEFAULT_SCHEDULE_HOUR = 9
DEFAULT_SCAN_TIMEZONE = _env_str("OUTRANK_DEFAULT_SCAN_TIMEZONE", "Australia/Sydney")

# Fail-safe when a stored timezone cannot be resolved.
INVALID_TIMEZONE_FALLBACK: Tuple[int, int] = (1, 9)

# -----------------------------
# Flows
# -----------------------------
STEP_RETRIES = _env_int("OUTRANK_STEP_RETRIES", 2)
STEP_RETRY_DELAY_S = _env_int("OUTRANK_STEP_RETRY_DELAY_S", 10)
ENRICH_STEP_RETRIES = _env_int("OUTRANK_ENRICH_STEP_RETRIES", 3)
FLAG_CACHE_TTL_S = _env_float("OUTRANK_FLAG_CACHE_TTL_S", 60.0)
# A run that has not written anything for this long is treated as abandoned
# by its worker and is resumed by the next dispatch pass.
STALE_RUN_AFTER_S = _env_int("OUTRANK_STALE_RUN_AFTER_S", 2 * 60 * 60)
RESUME_STALE_RUNS = _env_bool("OUTRANK_RESUME_STALE_RUNS", True)
