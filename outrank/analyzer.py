"""
Business analyzer: combined crawl text -> BusinessAnalysis.

The pipeline depends on the `Analyzer` protocol only. `LLMAnalyzer` is the
default and never raises: on any model or parsing failure it returns the
default analysis so the scan can still produce a (generic) report.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

from .errors import ProviderError
from .llm.costs import CostTracker
from .llm.provider import GatewayProvider, LLMProvider, extract_json_object
from .models import BusinessAnalysis

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 8000
MAX_LIST_ITEMS = 10

ANALYSIS_PROMPT = """You are a business analyst. Analyze the following website content and extract key information about what this business does.

Website Content:
{content}
{country_hint}
---

Respond with a JSON object containing:
- businessName: The name of the business (or null if not clear)
- businessType: A short description of what kind of business this is (e.g., "SEO consultancy", "plumbing services", "SaaS platform", "e-commerce store")
- services: An array of specific services offered (max 10)
- products: An array of specific products or brands sold (max 10, empty if none)
- location: Geographic location if mentioned (e.g., "Sydney, Australia", "California, USA") or null
- targetAudience: Who the business serves (e.g., "small businesses", "enterprise companies", "homeowners")
- keyPhrases: Important phrases that describe what they do (max 10)
- industry: The broader industry category (e.g., "Marketing", "Home Services", "Technology", "Healthcare")

Return ONLY valid JSON, no other text."""


class Analyzer(Protocol):
    def analyze(self, combined_text: str, tld_country: Optional[str] = None) -> BusinessAnalysis:
        ...


def _str_or_none(v: Any) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


def _str_list(v: Any) -> List[str]:
    if not isinstance(v, list):
        return []
    return [str(x).strip() for x in v if str(x).strip()][:MAX_LIST_ITEMS]


def parse_analysis(obj: dict) -> BusinessAnalysis:
    return BusinessAnalysis(
        business_type=_str_or_none(obj.get("businessType")) or "Unknown business type",
        industry=_str_or_none(obj.get("industry")) or "General",
        business_name=_str_or_none(obj.get("businessName")),
        location=_str_or_none(obj.get("location")),
        services=_str_list(obj.get("services")),
        products=_str_list(obj.get("products")),
        key_phrases=_str_list(obj.get("keyPhrases")),
        target_audience=_str_or_none(obj.get("targetAudience")),
    )


class LLMAnalyzer:
    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        platform: str = "chatgpt",
        costs: Optional[CostTracker] = None,
        run_id: str = "",
    ) -> None:
        self.provider = provider or GatewayProvider()
        self.platform = platform
        self.costs = costs
        self.run_id = run_id

    def analyze(self, combined_text: str, tld_country: Optional[str] = None) -> BusinessAnalysis:
        hint = f"\nThe domain's country-code TLD suggests the business is based in {tld_country}.\n" if tld_country else ""
        prompt = ANALYSIS_PROMPT.format(content=combined_text[:MAX_CONTENT_CHARS], country_hint=hint)
        try:
            completion = self.provider.complete(self.platform, prompt, max_tokens=1000)
        except ProviderError as e:
            logger.warning("Analyzer call failed, using default analysis: %s", e)
            return BusinessAnalysis.default()

        if self.costs is not None:
            self.costs.track(self.run_id, "analyze", completion)

        obj = extract_json_object(completion.text)
        if not obj:
            logger.warning("Analyzer returned no JSON object, using default analysis")
            return BusinessAnalysis.default()

        analysis = parse_analysis(obj)
        if analysis.location is None and tld_country:
            analysis.location = tld_country
        return analysis
