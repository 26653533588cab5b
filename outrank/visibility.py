"""
Visibility queries and scoring.

Runs each saved prompt on every query platform, records whether the scanned
domain was mentioned (and where), then rolls the answers up into the report:
per-platform mention %, an overall %, the competitors the assistants named
instead, and a one-paragraph summary.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ProviderError
from .llm.costs import CostTracker
from .llm.policy import PlatformCallPolicy
from .llm.provider import GatewayProvider, LLMProvider
from .models import QUERY_PLATFORMS, BusinessAnalysis, PlatformAnswer, SavedPrompt, VisibilityScores

logger = logging.getLogger(__name__)

ANSWER_MAX_TOKENS = 1000
MAX_COMPETITORS_PER_ANSWER = 10
MAX_TOP_COMPETITORS = 10

SYSTEM_PROMPT = (
    "You are a helpful assistant providing information about businesses and services. "
    "When users ask for recommendations, be specific and mention actual company names when relevant. "
    "Provide balanced, informative responses."
)

PLATFORM_LABELS: Dict[str, str] = {
    "chatgpt": "ChatGPT",
    "claude": "Claude",
    "gemini": "Gemini",
    "perplexity": "Perplexity",
}

_COMPETITOR_PATTERNS = (
    re.compile(r"(?:recommend|suggest|consider|try|check out|look at)\s+([A-Z][a-zA-Z0-9]+(?:\s+[A-Z][a-zA-Z0-9]+)?)"),
    re.compile(r"([A-Z][a-zA-Z0-9]+(?:\.[a-z]{2,4})?)\s+(?:is|are|offers|provides)\b"),
    re.compile(r"compan(?:y|ies)\s+(?:like|such as)\s+([A-Z][a-zA-Z0-9]+(?:,\s*[A-Z][a-zA-Z0-9]+)*)"),
)
_NOT_COMPANIES = {"The", "This", "That", "Some", "Many", "Here", "These", "They", "It", "If", "You", "Your"}


def check_domain_mention(response: str, domain: str) -> Tuple[bool, Optional[int]]:
    """
    (mentioned, position). Matches the domain or its first label ("acme" for
    acme.com.au). Position is the third of the response the first match is
    in: 1, 2 or 3.
    """
    low = (response or "").lower()
    full = (domain or "").lower()
    if not low or not full:
        return False, None

    index = low.find(full)
    if index == -1:
        index = low.find(full.split(".")[0])
    if index == -1:
        return False, None

    relative = index / len(response)
    if relative < 0.33:
        return True, 1
    if relative < 0.66:
        return True, 2
    return True, 3


def extract_competitors(response: str, domain: str) -> List[str]:
    """Capitalised names the assistant recommends, excluding the scanned domain."""
    domain_base = (domain or "").lower().split(".")[0]
    names: List[str] = []
    seen = set()
    for pattern in _COMPETITOR_PATTERNS:
        for match in pattern.finditer(response or ""):
            for raw in match.group(1).split(","):
                name = raw.strip()
                if not name or name in _NOT_COMPANIES:
                    continue
                if domain_base and domain_base in name.lower():
                    continue
                if name.lower() in seen:
                    continue
                seen.add(name.lower())
                names.append(name)
    return names[:MAX_COMPETITORS_PER_ANSWER]


def query_platform(
    prompt: SavedPrompt,
    platform: str,
    domain: str,
    run_id: str,
    provider: LLMProvider,
    costs: Optional[CostTracker] = None,
) -> PlatformAnswer:
    try:
        completion = provider.complete(platform, prompt.text, max_tokens=ANSWER_MAX_TOKENS, system=SYSTEM_PROMPT)
    except ProviderError as e:
        logger.warning("run %s: %s failed on %r: %s", run_id, platform, prompt.text[:50], e)
        return PlatformAnswer(
            prompt_id=prompt.id,
            platform=platform,
            query=prompt.text,
            response="",
            domain_mentioned=False,
            mention_position=None,
            competitors_mentioned=[],
            response_time_ms=0,
            error=str(e)[:500],
        )

    if costs is not None:
        costs.track(run_id, f"query_{platform}", completion)

    mentioned, position = check_domain_mention(completion.text, domain)
    return PlatformAnswer(
        prompt_id=prompt.id,
        platform=platform,
        query=prompt.text,
        response=completion.text,
        domain_mentioned=mentioned,
        mention_position=position,
        competitors_mentioned=extract_competitors(completion.text, domain),
        response_time_ms=completion.latency_ms,
    )


def query_all_platforms(
    prompts: Sequence[SavedPrompt],
    domain: str,
    run_id: str,
    provider: Optional[LLMProvider] = None,
    policy: Optional[PlatformCallPolicy] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
    costs: Optional[CostTracker] = None,
    platforms: Sequence[str] = QUERY_PLATFORMS,
) -> List[PlatformAnswer]:
    """
    Every prompt on every platform. `on_progress(completed, total)` fires after
    each prompt with the number of platform answers collected so far.
    """
    provider = provider or GatewayProvider()
    policy = policy or PlatformCallPolicy()

    total = len(prompts) * len(platforms)
    answers: List[PlatformAnswer] = []
    for i, prompt in enumerate(prompts):
        if i and policy.delay_s:
            policy.sleep(policy.delay_s)
        answers.extend(
            policy.map(list(platforms), lambda p, pr=prompt: query_platform(pr, p, domain, run_id, provider, costs))
        )
        if on_progress is not None:
            on_progress(len(answers), total)
    return answers


# -----------------------------
# Scoring
# -----------------------------
def calculate_visibility_score(answers: Sequence[PlatformAnswer]) -> VisibilityScores:
    by_platform: Dict[str, Dict[str, int]] = {}
    for a in answers:
        p = by_platform.setdefault(a.platform, {"mentioned": 0, "total": 0, "score": 0})
        p["total"] += 1
        if a.domain_mentioned:
            p["mentioned"] += 1

    for p in by_platform.values():
        p["score"] = round(100 * p["mentioned"] / max(p["total"], 1))

    mentioned = sum(p["mentioned"] for p in by_platform.values())
    total = sum(p["total"] for p in by_platform.values())
    return VisibilityScores(overall=round(100 * mentioned / max(total, 1)), by_platform=by_platform)


def extract_top_competitors(answers: Sequence[PlatformAnswer], limit: int = MAX_TOP_COMPETITORS) -> List[Dict[str, object]]:
    counts: Counter = Counter()
    for a in answers:
        counts.update(a.competitors_mentioned)
    return [{"name": name, "count": count} for name, count in counts.most_common(limit)]


def _describe(score: int) -> str:
    if score >= 70:
        return "strong"
    if score >= 40:
        return "moderate"
    if score >= 20:
        return "low"
    return "very low"


def generate_summary(
    analysis: BusinessAnalysis,
    scores: VisibilityScores,
    top_competitors: Sequence[Dict[str, object]],
    domain: str,
) -> str:
    name = analysis.business_name or domain
    labels = [PLATFORM_LABELS.get(p, p) for p in scores.by_platform]
    if len(labels) > 1:
        platforms = ", ".join(labels[:-1]) + ", and " + labels[-1]
    else:
        platforms = labels[0] if labels else "AI assistants"

    summary = (
        f"{name} has {_describe(scores.overall)} AI visibility with an overall score of {scores.overall}%. "
        f"The site was mentioned in {scores.total_mentions} out of {scores.total_queries} AI queries across {platforms}. "
    )
    if top_competitors:
        top_three = ", ".join(str(c["name"]) for c in top_competitors[:3])
        summary += f"Top competitors mentioned by AI include: {top_three}. "
    if scores.overall < 50:
        summary += "There is significant opportunity to improve AI visibility through content optimization and structured data."
    return summary.strip()
