# flows/process_scan_flow.py
from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from prefect import flow, get_run_logger, task

from outrank import config
from outrank.errors import ScanAlreadyInFlight
from outrank.events import PrefectEventBus
from outrank.models import BusinessAnalysis, PlatformAnswer, SavedPrompt, ScanRun, ScanRunStatus
from outrank.pipeline import ScanPipeline, is_retryable
from outrank.repository import ScanRepository

load_dotenv()


@lru_cache(maxsize=1)
def _pipeline() -> ScanPipeline:
    return ScanPipeline(ScanRepository.from_env(), bus=PrefectEventBus())


def _retry_unless_fatal(task, task_run, state) -> bool:
    """Retry transient errors only; see outrank.pipeline.is_retryable."""
    try:
        state.result()
    except Exception as e:
        return is_retryable(e)
    return True


_STEP = dict(
    retries=config.STEP_RETRIES,
    retry_delay_seconds=config.STEP_RETRY_DELAY_S,
    retry_condition_fn=_retry_unless_fatal,
)


@task(name="start-scan", **_STEP)
def start_scan(domain: str, lead_id: str, domain_subscription_id: Optional[str], scan_id: Optional[str]) -> ScanRun:
    return _pipeline().start_scan(domain, lead_id, domain_subscription_id, scan_id)


@task(name="crawl-and-analyze", **_STEP)
def crawl_and_analyze(run: ScanRun) -> BusinessAnalysis:
    return _pipeline().crawl_and_analyze(run)


@task(name="generate-queries", **_STEP)
def generate_queries(run: ScanRun, analysis: BusinessAnalysis) -> List[SavedPrompt]:
    return _pipeline().generate_queries(run, analysis)


@task(name="query-platforms", **_STEP)
def query_platforms(run: ScanRun, prompts: List[SavedPrompt]) -> List[PlatformAnswer]:
    return _pipeline().query_platforms(run, prompts)


@task(name="score-and-report", **_STEP)
def score_and_report(run: ScanRun, analysis: BusinessAnalysis, answers: List[PlatformAnswer]) -> str:
    return _pipeline().score_and_report(run, analysis, answers)


@task(name="complete-scan", **_STEP)
def complete_scan(run: ScanRun) -> ScanRun:
    return _pipeline().complete(run)


@flow(name="process-scan")
def process_scan(
    domain: str,
    lead_id: str,
    email: str = "",
    domain_subscription_id: Optional[str] = None,
    scan_id: Optional[str] = None,
    skip_email: bool = False,
) -> Dict[str, Any]:
    """
    Handles the `scan/process` event: one website scan from crawl to report.

    Each step is a task with its own retries; a step that already produced its
    artifacts is skipped, so re-running a flow for the same scan_id resumes it.
    """
    logger = get_run_logger()
    pipeline = _pipeline()

    try:
        run = start_scan(domain, lead_id, domain_subscription_id, scan_id)
    except ScanAlreadyInFlight as e:
        logger.info(json.dumps({"event": "scan_skipped_in_flight", "key": e.dispatch_key, "run_id": e.run_id}, sort_keys=True))
        return {"status": "skipped", "reason": "in_flight", "run_id": e.run_id}

    if ScanRunStatus.is_terminal(run.status):
        logger.info("process-scan: run %s already %s; nothing to do", run.id, run.status)
        return {"run_id": run.id, "status": run.status}

    logger.info(json.dumps({"event": "process_scan_start", "run_id": run.id, "domain": run.domain, "email": email}, sort_keys=True))

    try:
        analysis = crawl_and_analyze(run)
        prompts = generate_queries(run, analysis)
        answers = query_platforms(run, prompts)
        token = score_and_report(run, analysis, answers)
        complete_scan(run)
    except Exception as e:
        message = pipeline.fail(run.id, e)
        logger.error("process-scan: run %s failed: %s", run.id, message)
        return {"run_id": run.id, "status": ScanRunStatus.FAILED, "error_message": message}

    enrichment_requested = pipeline.request_enrichment(run)
    if skip_email or not email:
        logger.info("process-scan: run %s complete; no email requested", run.id)

    summary = {
        "run_id": run.id,
        "status": ScanRunStatus.COMPLETE,
        "url_token": token,
        "enrichment_requested": enrichment_requested,
    }
    logger.info(json.dumps({"event": "process_scan_done", **summary}, sort_keys=True))
    return summary


if __name__ == "__main__":
    import sys

    process_scan(domain=sys.argv[1], lead_id=sys.argv[2])
