"""
Subscriber enrichment: brand awareness + competitive summary for a finished scan.

Invocations are keyed by scan run id and last-write-wins: each one claims a
fresh token on the run, and every step first checks the token is still
current. A newer invocation for the same run therefore makes an older one
stop at its next step boundary with EnrichmentSuperseded.

Steps:
  setup                 claim token, load analysis + competitors
  brand_awareness       replace the run's brand_awareness_results
  competitive_summary   only if there are competitor_compare results
  finalize              enrichment_status = complete
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import GENERIC_SCAN_ERROR, EnrichmentSuperseded, ScanFailed
from .llm.costs import CostTracker
from .llm.policy import PlatformCallPolicy
from .llm.provider import GatewayProvider, LLMProvider
from .models import BrandAwarenessResult, BusinessAnalysis
from .repository import ScanRepository
from .research.brand_awareness import (
    analyze_brand_awareness,
    generate_brand_awareness_queries,
    generate_competitive_summary,
    run_brand_awareness_queries,
)

logger = logging.getLogger(__name__)

ENRICHMENT_FAILED_MESSAGE = "We couldn't finish the extended analysis for this report."


@dataclass
class EnrichmentContext:
    run_id: str
    lead_id: str
    token: str
    domain: str
    analysis: BusinessAnalysis
    competitors: List[str] = field(default_factory=list)


class Enricher:
    def __init__(
        self,
        repo: ScanRepository,
        *,
        provider: Optional[LLMProvider] = None,
        policy: Optional[PlatformCallPolicy] = None,
        costs: Optional[CostTracker] = None,
    ) -> None:
        self.repo = repo
        self.provider = provider or GatewayProvider()
        self.policy = policy or PlatformCallPolicy()
        self.costs = costs if costs is not None else CostTracker(repo)

    def _check(self, run_id: str, token: str, step: str) -> None:
        if not self.repo.enrichment_is_current(run_id, token):
            logger.info(json.dumps({"event": "enrichment_superseded", "run_id": run_id, "step": step}, sort_keys=True))
            raise EnrichmentSuperseded(f"enrichment of {run_id} superseded before {step}")

    def setup(self, run_id: str, lead_id: str, token: Optional[str] = None) -> EnrichmentContext:
        """Claims the run unless `token` was already claimed by the caller."""
        if token is None:
            token = self.repo.claim_enrichment(run_id)
        run = self.repo.get_scan_run(run_id)

        analysis = self.repo.load_site_analysis(run_id)
        if analysis is None:
            raise ScanFailed(GENERIC_SCAN_ERROR, detail=f"site analysis not found for scan {run_id}")

        competitors = self.repo.active_competitors(lead_id, limit=5)
        if competitors:
            logger.info("run %s: using %d tracked competitors", run_id, len(competitors))
        else:
            report = self.repo.get_report(run_id) or {}
            top = report.get("top_competitors") or []
            if top:
                competitors = [str(top[0]["name"])]
                logger.info("run %s: using top report competitor %s", run_id, competitors[0])

        return EnrichmentContext(
            run_id=run_id,
            lead_id=lead_id,
            token=token,
            domain=run.domain,
            analysis=analysis,
            competitors=competitors,
        )

    def brand_awareness(self, ctx: EnrichmentContext) -> List[BrandAwarenessResult]:
        self._check(ctx.run_id, ctx.token, "brand_awareness")
        queries = generate_brand_awareness_queries(ctx.analysis, ctx.domain, ctx.competitors or None)
        results = run_brand_awareness_queries(
            queries, ctx.run_id, self.provider, self.policy, costs=self.costs
        )
        # Re-check before writing so a superseded run never overwrites the newer one's rows.
        self._check(ctx.run_id, ctx.token, "brand_awareness_save")
        self.repo.save_brand_awareness(ctx.run_id, results)
        logger.info(
            json.dumps(
                {
                    "event": "brand_awareness_saved",
                    "run_id": ctx.run_id,
                    "queries": len(queries),
                    "results": len(results),
                    "recognized": sum(1 for r in results if r.recognized),
                },
                sort_keys=True,
            )
        )
        return results

    def competitive_summary(
        self, ctx: EnrichmentContext, results: List[BrandAwarenessResult]
    ) -> Optional[Dict[str, Any]]:
        self._check(ctx.run_id, ctx.token, "competitive_summary")
        if not any(r.query_type == "competitor_compare" for r in results):
            logger.info("run %s: no competitor data, skipping competitive summary", ctx.run_id)
            return None

        summary = generate_competitive_summary(
            results,
            ctx.analysis.business_name or ctx.domain,
            self.provider,
            run_id=ctx.run_id,
            costs=self.costs,
        )
        if summary is not None:
            summary["brand_awareness"] = analyze_brand_awareness(results)
            self.repo.save_competitive_summary(ctx.run_id, summary)
        return summary

    def finalize(self, ctx: EnrichmentContext) -> bool:
        self._check(ctx.run_id, ctx.token, "finalize")
        return self.repo.finish_enrichment(ctx.run_id, ctx.token)

    def fail(self, run_id: str, token: str, exc: BaseException) -> None:
        message = exc.user_message if isinstance(exc, ScanFailed) else ENRICHMENT_FAILED_MESSAGE
        logger.error(
            json.dumps(
                {"event": "enrichment_failed", "run_id": run_id, "error_type": type(exc).__name__, "error": str(exc)[:500]},
                sort_keys=True,
            )
        )
        self.repo.fail_enrichment(run_id, token, message)

    def run(self, run_id: str, lead_id: str) -> Dict[str, Any]:
        token = self.repo.claim_enrichment(run_id)
        try:
            ctx = self.setup(run_id, lead_id, token)
            results = self.brand_awareness(ctx)
            summary = self.competitive_summary(ctx, results)
            self.finalize(ctx)
        except EnrichmentSuperseded:
            return {"run_id": run_id, "status": "superseded"}
        except Exception as e:
            self.fail(run_id, token, e)
            raise

        return {
            "run_id": run_id,
            "status": "complete",
            "results": len(results),
            "recognized": sum(1 for r in results if r.recognized),
            "competitive_summary": summary is not None,
        }
