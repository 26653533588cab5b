"""
Brand awareness.

Tests what the AI assistants actually know about a business, compared to what
its website claims:

- brand_recall: does the assistant know the business at all?
- service_check: does it know the business offers a given service?
- competitor_compare: how does it position the business against a competitor?

Recognition, confidence and positioning are keyword heuristics over the
response text. They are deliberately cheap; the raw response is stored so the
report can show what was actually said.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import ProviderError
from ..llm.costs import CostTracker
from ..llm.policy import PlatformCallPolicy
from ..llm.provider import GatewayProvider, LLMProvider, extract_json_object
from ..models import QUERY_PLATFORMS, BrandAwarenessQuery, BrandAwarenessResult, BusinessAnalysis

logger = logging.getLogger(__name__)

BRAND_MAX_TOKENS = 800
SUMMARY_MAX_TOKENS = 1000
SUMMARY_PLATFORM = "claude"

UNKNOWN_PHRASES = (
    "i don't have specific information",
    "i don't have specific details",
    "i don't have detailed information",
    "i'm not familiar with",
    "i don't have data about",
    "i cannot find information",
    "no specific information",
    "i'm unable to provide specific",
    "i don't have access to",
    "i don't know about",
    "i'm not aware of",
    "i couldn't find any",
    "no information available",
    "it's best to visit their official website",
    "visit their website directly",
    "contact them directly",
    "check their official website",
    "i don't have real-time",
    "i don't have current information",
    "my knowledge doesn't include",
    "i cannot provide specific details",
)

CONFIDENT_PHRASES = ("known for", "specializes in", "recognized for", "expertise in", "leading provider")


def generate_brand_awareness_queries(
    analysis: BusinessAnalysis,
    domain: str,
    competitors: Optional[Sequence[str]] = None,
) -> List[BrandAwarenessQuery]:
    business_name = analysis.business_name or domain
    # Name plus domain, so an assistant that only knows the site by URL still matches.
    identifier = f"{business_name} ({domain})" if analysis.business_name else domain

    queries: List[BrandAwarenessQuery] = [
        BrandAwarenessQuery(
            type="brand_recall",
            prompt=(
                f"What do you know about {identifier}? What services do they offer and where are they located? "
                f"Please include any information you have about their website at {domain}."
            ),
            tested_entity=business_name,
            tested_domain=domain,
        )
    ]

    for service in analysis.services[:3]:
        queries.append(
            BrandAwarenessQuery(
                type="service_check",
                prompt=(
                    f"I found {identifier} online. Based on your knowledge, does this specific company offer "
                    f'"{service}" as one of their services? I\'m specifically asking about {business_name} '
                    f"at {domain}, not about {service} in general."
                ),
                tested_entity=business_name,
                tested_domain=domain,
                tested_attribute=service,
            )
        )

    for competitor in competitors or []:
        queries.append(
            BrandAwarenessQuery(
                type="competitor_compare",
                prompt=(
                    f"I'm looking for {analysis.business_type} in {analysis.location or 'my area'}. "
                    f"How would you compare {identifier} to {competitor}? "
                    "What are the strengths and weaknesses of each?"
                ),
                tested_entity=business_name,
                tested_domain=domain,
                compared_to=competitor,
            )
        )

    return queries


# -----------------------------
# Heuristics
# -----------------------------
def check_entity_recognized(response: str, entity: str, domain: Optional[str] = None) -> bool:
    """Entity (or domain) is named and the assistant doesn't hedge about knowing it."""
    low = (response or "").lower()
    has_entity = bool(entity) and entity.lower() in low
    has_domain = bool(domain) and domain.lower() in low
    if not (has_entity or has_domain):
        return False
    return not any(phrase in low for phrase in UNKNOWN_PHRASES)


def calculate_confidence(response: str, query: BrandAwarenessQuery, recognized: bool) -> int:
    if not recognized:
        return 0

    low = response.lower()
    score = 50
    if query.tested_attribute and query.tested_attribute.lower() in low:
        score += 25
    if len(response) > 500:
        score += 10
    if len(response) > 1000:
        score += 10
    score += 5 * sum(1 for phrase in CONFIDENT_PHRASES if phrase in low)
    return min(score, 100)


def analyze_positioning(response: str, entity: str, competitor: str) -> str:
    low = (response or "").lower()
    ent = entity.lower()
    comp = competitor.lower()

    stronger = (
        f"{ent} is better",
        f"{ent} excels",
        f"{ent} offers more",
        f"prefer {ent}",
        f"recommend {ent}",
        f"{ent} stands out",
    )
    weaker = (
        f"{comp} is better",
        f"{comp} excels",
        f"{comp} is larger",
        f"{comp} has more",
        f"recommend {comp}",
        f"{comp} is more established",
    )

    if any(i in low for i in stronger):
        return "stronger"
    if any(i in low for i in weaker):
        return "weaker"
    if ent in low and comp in low:
        return "equal"
    return "not_compared"


# -----------------------------
# Running queries
# -----------------------------
def run_query_on_platform(
    query: BrandAwarenessQuery,
    platform: str,
    run_id: str,
    provider: LLMProvider,
    costs: Optional[CostTracker] = None,
) -> BrandAwarenessResult:
    try:
        completion = provider.complete(platform, query.prompt, max_tokens=BRAND_MAX_TOKENS)
    except ProviderError as e:
        logger.warning("run %s: brand %s failed on %s: %s", run_id, query.type, platform, e)
        return BrandAwarenessResult(
            platform=platform,
            query_type=query.type,
            tested_entity=query.tested_entity,
            recognized=False,
            attribute_mentioned=False,
            response_text=str(e) or "Query failed",
            confidence_score=0,
            response_time_ms=0,
            tested_attribute=query.tested_attribute,
            compared_to=query.compared_to,
        )

    if costs is not None:
        costs.track(run_id, f"brand_{query.type}_{platform}", completion)

    text = completion.text
    recognized = check_entity_recognized(text, query.tested_entity, query.tested_domain)
    attribute_mentioned = bool(query.tested_attribute) and query.tested_attribute.lower() in text.lower()
    positioning = "not_compared"
    if query.type == "competitor_compare" and query.compared_to:
        positioning = analyze_positioning(text, query.tested_entity, query.compared_to)

    return BrandAwarenessResult(
        platform=platform,
        query_type=query.type,
        tested_entity=query.tested_entity,
        recognized=recognized,
        attribute_mentioned=attribute_mentioned,
        response_text=text,
        confidence_score=calculate_confidence(text, query, recognized),
        response_time_ms=completion.latency_ms,
        tested_attribute=query.tested_attribute,
        compared_to=query.compared_to,
        positioning=positioning,
    )


def run_brand_awareness_queries(
    queries: Sequence[BrandAwarenessQuery],
    run_id: str,
    provider: Optional[LLMProvider] = None,
    policy: Optional[PlatformCallPolicy] = None,
    *,
    costs: Optional[CostTracker] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
    platforms: Sequence[str] = QUERY_PLATFORMS,
) -> List[BrandAwarenessResult]:
    """Every query on every platform. Results are query-major, platform order within."""
    provider = provider or GatewayProvider()
    policy = policy or PlatformCallPolicy()

    total = len(queries) * len(platforms)
    results: List[BrandAwarenessResult] = []
    for i, query in enumerate(queries):
        if i and policy.delay_s:
            policy.sleep(policy.delay_s)
        batch = policy.map(list(platforms), lambda p, q=query: run_query_on_platform(q, p, run_id, provider, costs))
        results.extend(batch)
        logger.info(
            json.dumps(
                {
                    "event": "brand_query_done",
                    "run_id": run_id,
                    "query_type": query.type,
                    "recognized_by": [r.platform for r in batch if r.recognized],
                },
                sort_keys=True,
            )
        )
        if on_progress is not None:
            on_progress(len(results), total)
    return results


# -----------------------------
# Aggregation
# -----------------------------
def analyze_brand_awareness(results: Sequence[BrandAwarenessResult]) -> Dict[str, Any]:
    recall = [r for r in results if r.query_type == "brand_recall"]
    overall = round(100 * sum(1 for r in recall if r.recognized) / len(recall)) if recall else 0

    by_service: Dict[str, List[BrandAwarenessResult]] = {}
    for r in results:
        if r.query_type == "service_check" and r.tested_attribute:
            by_service.setdefault(r.tested_attribute, []).append(r)

    service_knowledge = []
    knowledge_gaps = []
    for service, rows in by_service.items():
        known_by = [r.platform for r in rows if r.attribute_mentioned]
        service_knowledge.append(
            {
                "service": service,
                "known_by": known_by,
                "unknown_by": [r.platform for r in rows if not r.attribute_mentioned],
            }
        )
        if not known_by:
            knowledge_gaps.append(service)

    by_competitor: Dict[str, Dict[str, str]] = {}
    for r in results:
        if r.query_type == "competitor_compare" and r.compared_to:
            by_competitor.setdefault(r.compared_to, {})[r.platform] = r.positioning

    return {
        "overall_recognition": overall,
        "service_knowledge": service_knowledge,
        "knowledge_gaps": knowledge_gaps,
        "competitor_positioning": [{"competitor": c, "positioning": p} for c, p in by_competitor.items()],
    }


COMPETITIVE_SUMMARY_PROMPT = """You are a competitive intelligence analyst.

Below is how several AI assistants compared {business_name} to its competitors.

{comparisons}

Summarize how AI assistants position {business_name}. Return ONLY a JSON object:
{{"strengths": ["..."], "weaknesses": ["..."], "opportunities": ["..."], "summary": "2-3 sentences"}}"""


def _comparison_block(results: Sequence[BrandAwarenessResult]) -> str:
    parts = []
    for r in results:
        if r.query_type != "competitor_compare":
            continue
        parts.append(f"[{r.platform} vs {r.compared_to}] (positioning: {r.positioning})\n{r.response_text[:1500]}")
    return "\n\n".join(parts)


def generate_competitive_summary(
    results: Sequence[BrandAwarenessResult],
    business_name: str,
    provider: Optional[LLMProvider] = None,
    *,
    run_id: str = "",
    costs: Optional[CostTracker] = None,
    platform: str = SUMMARY_PLATFORM,
) -> Optional[Dict[str, Any]]:
    """
    Strengths / weaknesses / opportunities drawn from the competitor_compare
    answers. Returns None if there were none or the model didn't give usable JSON.
    """
    comparisons = _comparison_block(results)
    if not comparisons:
        return None

    provider = provider or GatewayProvider()
    prompt = COMPETITIVE_SUMMARY_PROMPT.format(business_name=business_name, comparisons=comparisons)
    try:
        completion = provider.complete(platform, prompt, max_tokens=SUMMARY_MAX_TOKENS)
    except ProviderError as e:
        logger.warning("run %s: competitive summary failed: %s", run_id, e)
        return None

    if costs is not None:
        costs.track(run_id, "competitive_summary", completion)

    obj = extract_json_object(completion.text)
    lists = {k: obj.get(k) for k in ("strengths", "weaknesses", "opportunities")}
    if not all(isinstance(v, list) for v in lists.values()) or not isinstance(obj.get("summary"), str):
        logger.warning("run %s: competitive summary response was not usable JSON", run_id)
        return None

    return {
        **{k: [str(x) for x in v if str(x).strip()] for k, v in lists.items()},
        "summary": obj["summary"].strip(),
    }
