# flows/enrich_scan_flow.py
from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from prefect import flow, get_run_logger, task

from outrank import config
from outrank.enrichment import EnrichmentContext, Enricher
from outrank.errors import EnrichmentSuperseded
from outrank.models import BrandAwarenessResult
from outrank.repository import ScanRepository

load_dotenv()


@lru_cache(maxsize=1)
def _enricher() -> Enricher:
    return Enricher(ScanRepository.from_env())


def _retry_unless_superseded(task, task_run, state) -> bool:
    try:
        state.result()
    except EnrichmentSuperseded:
        return False
    except Exception:
        return True
    return True


_STEP = dict(
    retries=config.ENRICH_STEP_RETRIES,
    retry_delay_seconds=config.STEP_RETRY_DELAY_S,
    retry_condition_fn=_retry_unless_superseded,
)


@task(name="setup-enrichment", **_STEP)
def setup_enrichment(scan_run_id: str, lead_id: str, token: str) -> EnrichmentContext:
    return _enricher().setup(scan_run_id, lead_id, token)


@task(name="brand-awareness-queries", **_STEP)
def brand_awareness(ctx: EnrichmentContext) -> List[BrandAwarenessResult]:
    return _enricher().brand_awareness(ctx)


@task(name="competitive-summary", **_STEP)
def competitive_summary(ctx: EnrichmentContext, results: List[BrandAwarenessResult]) -> Optional[Dict[str, Any]]:
    return _enricher().competitive_summary(ctx, results)


@task(name="finalize-enrichment", **_STEP)
def finalize_enrichment(ctx: EnrichmentContext) -> bool:
    return _enricher().finalize(ctx)


@flow(name="enrich-scan")
def enrich_scan(lead_id: str, scan_run_id: str) -> Dict[str, Any]:
    """
    Handles `subscriber/enrich`: brand awareness + competitive summary for a
    finished scan. A newer invocation for the same scan_run_id supersedes this
    one; the older run stops at its next step and reports "superseded".
    """
    logger = get_run_logger()
    enricher = _enricher()
    token = enricher.repo.claim_enrichment(scan_run_id)
    logger.info(json.dumps({"event": "enrichment_start", "run_id": scan_run_id, "lead_id": lead_id}, sort_keys=True))

    try:
        ctx = setup_enrichment(scan_run_id, lead_id, token)
        results = brand_awareness(ctx)
        summary = competitive_summary(ctx, results)
        finalize_enrichment(ctx)
    except EnrichmentSuperseded:
        logger.info("enrich-scan: %s superseded by a newer invocation", scan_run_id)
        return {"run_id": scan_run_id, "status": "superseded"}
    except Exception as e:
        enricher.fail(scan_run_id, token, e)
        raise

    out = {
        "run_id": scan_run_id,
        "status": "complete",
        "results": len(results),
        "recognized": sum(1 for r in results if r.recognized),
        "competitive_summary": summary is not None,
    }
    logger.info(json.dumps({"event": "enrichment_done", **out}, sort_keys=True))
    return out


if __name__ == "__main__":
    import sys

    enrich_scan(lead_id=sys.argv[1], scan_run_id=sys.argv[2])
