from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

# Platforms used for query research (fixed order).
RESEARCH_PLATFORMS: Tuple[str, ...] = ("chatgpt", "claude", "gemini")

# Platforms used for visibility and brand-awareness queries.
QUERY_PLATFORMS: Tuple[str, ...] = ("chatgpt", "claude", "gemini", "perplexity")

QUERY_CATEGORIES: Tuple[str, ...] = (
    "finding_provider",
    "product_specific",
    "service",
    "comparison",
    "review",
    # legacy categories kept for older rows
    "how_to",
    "general",
)


class ScanRunStatus:
    """
    Scan run lifecycle.

      pending -> crawling -> analyzing -> generating -> querying -> complete
      any non-terminal state -> failed
    """

    PENDING = "pending"
    CRAWLING = "crawling"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    QUERYING = "querying"
    COMPLETE = "complete"
    FAILED = "failed"

    ORDER: Tuple[str, ...] = (PENDING, CRAWLING, ANALYZING, GENERATING, QUERYING, COMPLETE)
    TERMINAL: FrozenSet[str] = frozenset({COMPLETE, FAILED})
    ACTIVE: FrozenSet[str] = frozenset({PENDING, CRAWLING, ANALYZING, GENERATING, QUERYING})

    @classmethod
    def is_terminal(cls, status: Optional[str]) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        if current in cls.TERMINAL:
            return False
        if new == cls.FAILED:
            return True
        if current not in cls.ORDER or new not in cls.ORDER:
            return False
        # Re-entering the current state is allowed so a retried step can
        # persist its own checkpoint again.
        return cls.ORDER.index(new) >= cls.ORDER.index(current)

    @classmethod
    def is_behind(cls, current: str, new: str) -> bool:
        """True when `new` is an earlier pipeline phase than `current`."""
        if current not in cls.ORDER or new not in cls.ORDER:
            return False
        return cls.ORDER.index(new) < cls.ORDER.index(current)


class SubscriptionStatus:
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


class EnrichmentStatus:
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class CrawledPage:
    url: str
    path: str
    title: Optional[str]
    description: Optional[str]
    h1: Optional[str]
    headings: Tuple[str, ...]
    body_text: str
    word_count: int

    @property
    def has_meta_description(self) -> bool:
        return bool(self.description)


@dataclass
class CrawlResult:
    domain: str
    pages: List[CrawledPage]
    total_pages: int
    has_sitemap: bool = False


@dataclass
class BusinessAnalysis:
    """
    What the analyzer concluded the business does.

    This is the shape persisted to `site_analyses` and fed into query research
    and brand awareness.
    """
    business_type: str
    industry: str = "General"
    business_name: Optional[str] = None
    location: Optional[str] = None
    services: List[str] = field(default_factory=list)
    products: List[str] = field(default_factory=list)
    key_phrases: List[str] = field(default_factory=list)
    target_audience: Optional[str] = None

    @classmethod
    def default(cls) -> "BusinessAnalysis":
        return cls(business_type="Business website", industry="General")


@dataclass(frozen=True)
class RawQuerySuggestion:
    query: str
    category: str
    platform: str


@dataclass(frozen=True)
class ResearchedQuery:
    query: str
    category: str
    suggested_by: FrozenSet[str]
    relevance_score: int

    @property
    def is_fallback(self) -> bool:
        return not self.suggested_by


@dataclass
class ScanRun:
    id: str
    domain: str
    lead_id: str
    status: str = ScanRunStatus.PENDING
    progress: int = 0
    domain_subscription_id: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    enrichment_status: Optional[str] = None
    enrichment_token: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def dispatch_key(self) -> str:
        return self.domain_subscription_id or self.lead_id


@dataclass
class DomainSubscription:
    id: str
    lead_id: str
    domain: str
    status: str = SubscriptionStatus.ACTIVE
    scan_schedule_day: Optional[int] = None
    scan_schedule_hour: Optional[int] = None
    scan_timezone: Optional[str] = None
    tier: str = "starter"
    email: Optional[str] = None


@dataclass(frozen=True)
class SavedPrompt:
    id: str
    text: str
    category: str


@dataclass
class PlatformAnswer:
    """One platform's answer to one saved prompt."""
    prompt_id: str
    platform: str
    query: str
    response: str
    domain_mentioned: bool
    mention_position: Optional[int]
    competitors_mentioned: List[str]
    response_time_ms: int
    error: Optional[str] = None


@dataclass
class VisibilityScores:
    overall: int
    by_platform: Dict[str, Dict[str, int]]

    @property
    def total_mentions(self) -> int:
        return sum(p["mentioned"] for p in self.by_platform.values())

    @property
    def total_queries(self) -> int:
        return sum(p["total"] for p in self.by_platform.values())


@dataclass(frozen=True)
class BrandAwarenessQuery:
    type: str  # brand_recall | service_check | competitor_compare
    prompt: str
    tested_entity: str
    tested_domain: Optional[str] = None
    tested_attribute: Optional[str] = None
    compared_to: Optional[str] = None


@dataclass
class BrandAwarenessResult:
    platform: str
    query_type: str
    tested_entity: str
    recognized: bool
    attribute_mentioned: bool
    response_text: str
    confidence_score: int
    response_time_ms: int
    tested_attribute: Optional[str] = None
    compared_to: Optional[str] = None
    positioning: str = "not_compared"
