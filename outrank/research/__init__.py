from .brand_awareness import (
    analyze_brand_awareness,
    generate_brand_awareness_queries,
    generate_competitive_summary,
    run_brand_awareness_queries,
)
from .query_research import (
    dedupe_and_rank_queries,
    generate_fallback_queries,
    query_similarity,
    research_queries,
    select_scan_queries,
    validate_category,
)

__all__ = [
    "analyze_brand_awareness",
    "dedupe_and_rank_queries",
    "generate_brand_awareness_queries",
    "generate_competitive_summary",
    "generate_fallback_queries",
    "query_similarity",
    "research_queries",
    "run_brand_awareness_queries",
    "select_scan_queries",
    "validate_category",
]
