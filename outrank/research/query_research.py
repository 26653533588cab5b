"""
Query research.

Asks each research platform which search queries real customers would type
when they are ready to hire or buy from a business like this one, then folds
the noisy, overlapping suggestions into a small ranked set.

Pipeline:
  research_queries()        -> RawQuerySuggestion per (platform, suggestion)
  dedupe_and_rank_queries() -> ResearchedQuery per cluster, ranked by how many
                               platforms agreed, diversified by category
  generate_fallback_queries() when every platform failed

Tuning constants below are kept for behavioural parity; override them per call
rather than editing them.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections import Counter
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .. import config
from ..errors import ProviderError
from ..llm.costs import CostTracker
from ..llm.policy import PlatformCallPolicy
from ..llm.provider import GatewayProvider, LLMProvider
from ..models import (
    QUERY_CATEGORIES,
    RESEARCH_PLATFORMS,
    BusinessAnalysis,
    RawQuerySuggestion,
    ResearchedQuery,
)

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.5
CATEGORY_CAP_DIVISOR = 3
NATURAL_LENGTH_BAND: Tuple[int, int] = (20, 60)
MIN_SIGNIFICANT_WORD_LEN = 3
POINTS_PER_PLATFORM = 10

RESEARCH_PROMPT = """You're a customer who needs to HIRE or BUY from: {business_type}

Location: {location}
They offer: {services}
They sell: {products}

Generate 10 search queries that would lead to a business being RECOMMENDED or MENTIONED in the response.

IMPORTANT: Focus on queries where an AI would name specific companies/providers:
- "who can help me with X" -> AI names providers
- "best X near me" -> AI recommends businesses
- "X company reviews" -> AI discusses specific businesses
- "hire X in [location]" -> AI suggests local providers
- "where to buy X" -> AI names retailers/sellers

AVOID queries that just get generic advice:
- "how to do X myself" -> AI gives DIY instructions, no businesses
- "what is X" -> AI explains concept, no recommendations
- "X tips" -> AI gives advice, doesn't name providers

Think like a real person ready to spend money:
- Casual language ("need a plumber asap" not "plumbing services required")
- Include location when relevant for {location}
- Include specific product/brand names they sell

Categories:
- finding_provider: Looking for a business/provider
- product_specific: Where to buy a specific product
- service: Need a specific service done
- comparison: Comparing providers/products (with intent to buy)
- review: Reviews of businesses/providers

Return ONLY a JSON array:
[{{"query": "example query", "category": "finding_provider"}}, ...]"""

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_CATEGORY_STRIP_RE = re.compile(r"[^a-z_]")


def render_research_prompt(analysis: BusinessAnalysis) -> str:
    return RESEARCH_PROMPT.format(
        business_type=analysis.business_type,
        location=analysis.location or "Not specified",
        services=", ".join(analysis.services[:5]) or "Not specified",
        products=", ".join(analysis.products[:5]) or "Not specified",
    )


def validate_category(raw: object) -> str:
    normalized = _CATEGORY_STRIP_RE.sub("", str(raw or "").lower())
    return normalized if normalized in QUERY_CATEGORIES else "general"


def parse_suggestions(text: str, platform: str) -> List[RawQuerySuggestion]:
    """
    Pull the JSON array out of a model response.

    Raises ValueError when there is no parsable array; malformed items inside
    a good array are skipped.
    """
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        raise ValueError("no JSON array in response")
    items = json.loads(match.group(0))
    if not isinstance(items, list):
        raise ValueError("response JSON is not an array")

    out: List[RawQuerySuggestion] = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("query"), str):
            continue
        query = item["query"].lower().strip()
        if not query:
            continue
        out.append(RawQuerySuggestion(query=query, category=validate_category(item.get("category")), platform=platform))
    return out


def research_on_platform(
    analysis: BusinessAnalysis,
    platform: str,
    run_id: str,
    provider: LLMProvider,
    costs: Optional[CostTracker] = None,
) -> List[RawQuerySuggestion]:
    """One platform's suggestions; any failure means zero suggestions."""
    try:
        completion = provider.complete(platform, render_research_prompt(analysis), max_tokens=config.RESEARCH_MAX_TOKENS)
        if costs is not None:
            costs.track(run_id, f"research_{platform}", completion)
        suggestions = parse_suggestions(completion.text, platform)
    except (ProviderError, ValueError) as e:
        logger.warning(
            json.dumps(
                {"event": "query_research_platform_failed", "run_id": run_id, "platform": platform, "error": str(e)[:300]},
                sort_keys=True,
            )
        )
        return []

    logger.info("run %s: %s suggested %d queries", run_id, platform, len(suggestions))
    return suggestions


def research_queries(
    analysis: BusinessAnalysis,
    run_id: str,
    on_progress: Optional[Callable[[str], None]] = None,
    *,
    provider: Optional[LLMProvider] = None,
    policy: Optional[PlatformCallPolicy] = None,
    costs: Optional[CostTracker] = None,
    platforms: Sequence[str] = RESEARCH_PLATFORMS,
) -> List[RawQuerySuggestion]:
    """
    Ask every research platform, in fixed order, for candidate queries.

    Platforms go through `policy` (sequential with a delay by default). Returns
    an empty list when all of them fail.
    """
    provider = provider or GatewayProvider()
    policy = policy or PlatformCallPolicy()

    def _one(platform: str) -> List[RawQuerySuggestion]:
        if on_progress is not None:
            on_progress(platform)
        return research_on_platform(analysis, platform, run_id, provider, costs)

    suggestions: List[RawQuerySuggestion] = []
    for batch in policy.map(list(platforms), _one):
        suggestions.extend(batch)
    return suggestions


# -----------------------------
# Dedupe / rank
# -----------------------------
def significant_words(query: str) -> set:
    return {w for w in query.lower().split() if len(w) >= MIN_SIGNIFICANT_WORD_LEN}


def query_similarity(a: str, b: str) -> float:
    """Jaccard similarity over significant words; 0 when either side has none."""
    wa, wb = significant_words(a), significant_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / len(wa | wb)


def group_similar_queries(
    suggestions: Iterable[RawQuerySuggestion],
    threshold: float = SIMILARITY_THRESHOLD,
) -> List[List[RawQuerySuggestion]]:
    """
    Single-pass greedy clustering.

    Each suggestion joins the first group whose seed query is at least
    `threshold` similar, otherwise it seeds a new group. Group order is
    first-seen order.
    """
    groups: List[List[RawQuerySuggestion]] = []
    for suggestion in suggestions:
        for group in groups:
            if query_similarity(suggestion.query, group[0].query) >= threshold:
                group.append(suggestion)
                break
        else:
            groups.append([suggestion])
    return groups


def _is_natural_length(query: str) -> bool:
    low, high = NATURAL_LENGTH_BAND
    return low <= len(query) <= high


def _representative(group: Sequence[RawQuerySuggestion]) -> RawQuerySuggestion:
    for s in group:
        if _is_natural_length(s.query):
            return s
    return group[0]


def _group_to_query(group: Sequence[RawQuerySuggestion]) -> ResearchedQuery:
    platforms = frozenset(s.platform for s in group)
    category = Counter(s.category for s in group).most_common(1)[0][0]
    return ResearchedQuery(
        query=_representative(group).query,
        category=category,
        suggested_by=platforms,
        relevance_score=POINTS_PER_PLATFORM * len(platforms),
    )


def dedupe_and_rank_queries(
    suggestions: Sequence[RawQuerySuggestion],
    limit: int = 7,
    *,
    threshold: float = SIMILARITY_THRESHOLD,
    category_cap: Optional[int] = None,
) -> List[ResearchedQuery]:
    """
    Collapse similar suggestions and pick the top `limit`.

    Ranking is by cross-platform agreement (stable, so ties keep first-seen
    order). Selection takes at most `category_cap` (default ceil(limit/3)) per
    category, then fills any remaining slots ignoring the cap.

    Pure: same input, same output.
    """
    if limit <= 0:
        return []

    ranked = sorted(
        (_group_to_query(g) for g in group_similar_queries(suggestions, threshold)),
        key=lambda q: q.relevance_score,
        reverse=True,
    )

    cap = category_cap if category_cap is not None else math.ceil(limit / CATEGORY_CAP_DIVISOR)
    selected: List[ResearchedQuery] = []
    per_category: Counter = Counter()
    for q in ranked:
        if len(selected) >= limit:
            break
        if per_category[q.category] < cap:
            selected.append(q)
            per_category[q.category] += 1

    if len(selected) < limit:
        picked = set(id(q) for q in selected)
        for q in ranked:
            if len(selected) >= limit:
                break
            if id(q) not in picked:
                selected.append(q)

    return selected


def generate_fallback_queries(analysis: BusinessAnalysis) -> List[ResearchedQuery]:
    """Deterministic queries built straight from the analysis; 2 to 7 of them."""
    location = analysis.location or "my area"
    business_type = analysis.business_type
    empty: frozenset = frozenset()

    queries: List[ResearchedQuery] = [
        ResearchedQuery(f"best {business_type} near me", "finding_provider", empty, 5),
        ResearchedQuery(f"{business_type} in {location}", "finding_provider", empty, 5),
    ]
    for service in analysis.services[:2]:
        queries.append(ResearchedQuery(f"who offers {service} in {location}", "service", empty, 3))
    for product in analysis.products[:2]:
        queries.append(ResearchedQuery(f"where to buy {product}", "product_specific", empty, 3))
    queries.append(ResearchedQuery(f"best rated {business_type} {location}", "review", empty, 4))

    return queries[:7]


def select_scan_queries(
    suggestions: Sequence[RawQuerySuggestion],
    analysis: BusinessAnalysis,
    limit: int = 7,
) -> Tuple[List[ResearchedQuery], str]:
    """
    The set a scan runs with, and where it came from ("researched" or
    "fallback"). Falls back only when research produced nothing usable.
    """
    selected = dedupe_and_rank_queries(suggestions, limit)
    if selected:
        return selected, "researched"
    return generate_fallback_queries(analysis)[:limit], "fallback"
