"""
Scan orchestration, independent of Prefect.

One scan run moves through:

  pending -> crawling -> analyzing -> generating -> querying -> complete
                         any non-terminal state -> failed

Each step persists its status before doing work and writes its artifacts with
replace-all / upsert keyed by run id, so a retried step never duplicates rows.
A step whose artifacts already exist is skipped, which is how a redelivered
or retried run resumes where it stopped:

  site_analyses row  -> skip crawl + analyze
  scan_prompts rows  -> skip query generation
  llm_responses rows -> skip platform querying

A retried step never moves the run back to an earlier status (see
`ScanRepository.enter_step`), so a crawl retried after analysis failed keeps
the run in `analyzing`.

The Prefect flow in flows/process_scan_flow.py wraps these steps as tasks;
`ScanPipeline.run()` chains them in-process for scripts and tests.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from . import config
from .analyzer import Analyzer, LLMAnalyzer
from .crawler import combine_crawled_content, crawl_site
from .errors import GENERIC_SCAN_ERROR, ScanAlreadyInFlight, ScanFailed
from .events import SUBSCRIBER_ENRICH, EventBus
from .flags import FlagCache
from .geo import extract_tld_country
from .llm.costs import CostTracker
from .llm.policy import PlatformCallPolicy
from .llm.provider import GatewayProvider, LLMProvider
from .models import BusinessAnalysis, CrawlResult, PlatformAnswer, SavedPrompt, ScanRun, ScanRunStatus
from .progress import (
    PROGRESS_ANALYZING,
    PROGRESS_COMPLETE,
    PROGRESS_CRAWLING,
    PROGRESS_GENERATED,
    PROGRESS_GENERATING,
    PROGRESS_QUERYING_START,
    querying_progress,
)
from .repository import ScanRepository
from .research.query_research import research_queries, select_scan_queries
from .schema import LLMResponseRow
from .visibility import calculate_visibility_score, extract_top_competitors, generate_summary, query_all_platforms

logger = logging.getLogger(__name__)

NO_PAGES_MESSAGE = "We couldn't read any pages on this website."
NO_PROMPTS_MESSAGE = "We couldn't generate questions for this website."


def _event(name: str, **fields: Any) -> str:
    return json.dumps({"event": name, **fields}, sort_keys=True, default=str)


def is_retryable(exc: BaseException) -> bool:
    """A ScanFailed or ScanAlreadyInFlight would fail the same way on every retry."""
    return not isinstance(exc, (ScanFailed, ScanAlreadyInFlight))


def user_message_for(exc: BaseException) -> str:
    """What the status view may show for a failure. Raw errors stay in the logs."""
    if isinstance(exc, ScanFailed):
        return exc.user_message
    return GENERIC_SCAN_ERROR


class ScanPipeline:
    def __init__(
        self,
        repo: ScanRepository,
        *,
        crawl: Callable[[str], CrawlResult] = crawl_site,
        analyzer: Optional[Analyzer] = None,
        provider: Optional[LLMProvider] = None,
        policy: Optional[PlatformCallPolicy] = None,
        costs: Optional[CostTracker] = None,
        bus: Optional[EventBus] = None,
        flags: Optional[FlagCache] = None,
        query_limit: int = config.RESEARCH_QUERY_LIMIT,
    ) -> None:
        self.repo = repo
        self.crawl = crawl
        self.analyzer = analyzer
        self.provider = provider or GatewayProvider()
        self.policy = policy or PlatformCallPolicy()
        self.costs = costs if costs is not None else CostTracker(repo)
        self.bus = bus
        self.flags = flags or FlagCache(repo.get_user_tier)
        self.query_limit = query_limit

    # -----------------------------
    # Steps
    # -----------------------------
    def start_scan(
        self,
        domain: str,
        lead_id: str,
        domain_subscription_id: Optional[str] = None,
        scan_id: Optional[str] = None,
    ) -> ScanRun:
        """Create the run, or pick up `scan_id` if it already exists. Raises ScanAlreadyInFlight."""
        run = self.repo.create_scan_run(domain, lead_id, domain_subscription_id, run_id=scan_id)
        logger.info(_event("scan_started", run_id=run.id, domain=run.domain, status=run.status))
        return run

    def crawl_and_analyze(self, run: ScanRun) -> BusinessAnalysis:
        existing = self.repo.load_site_analysis(run.id)
        if existing is not None:
            logger.info("run %s: site analysis exists, skipping crawl", run.id)
            return existing

        self.repo.enter_step(run.id, ScanRunStatus.CRAWLING, PROGRESS_CRAWLING)
        crawl = self.crawl(run.domain)
        logger.info(_event("crawl_done", run_id=run.id, pages=crawl.total_pages, has_sitemap=crawl.has_sitemap))
        if not crawl.pages:
            raise ScanFailed(NO_PAGES_MESSAGE, detail=f"crawl of {run.domain} returned zero pages")

        self.repo.enter_step(run.id, ScanRunStatus.ANALYZING, PROGRESS_ANALYZING)
        content = combine_crawled_content(crawl)
        tld_country = extract_tld_country(run.domain)
        analyzer = self.analyzer or LLMAnalyzer(self.provider, costs=self.costs, run_id=run.id)
        analysis = analyzer.analyze(content, tld_country)

        self.repo.save_site_analysis(run.id, analysis, crawl, content, tld_country)
        logger.info(
            _event(
                "analysis_done",
                run_id=run.id,
                business_type=analysis.business_type,
                services=len(analysis.services),
                location=analysis.location,
            )
        )
        return analysis

    def generate_queries(self, run: ScanRun, analysis: BusinessAnalysis) -> List[SavedPrompt]:
        existing = self.repo.load_prompts(run.id)
        if existing:
            logger.info("run %s: %d prompts exist, skipping research", run.id, len(existing))
            return existing

        self.repo.enter_step(run.id, ScanRunStatus.GENERATING, PROGRESS_GENERATING)
        suggestions = research_queries(
            analysis,
            run.id,
            lambda platform: logger.info("run %s: researching queries on %s", run.id, platform),
            provider=self.provider,
            policy=self.policy,
            costs=self.costs,
        )
        selected, source = select_scan_queries(suggestions, analysis, self.query_limit)
        if source == "fallback":
            logger.warning(_event("query_research_fallback", run_id=run.id, suggestions=len(suggestions)))

        prompts = self.repo.save_research(run.id, suggestions, selected, source)
        if not prompts:
            raise ScanFailed(NO_PROMPTS_MESSAGE, detail="no prompts saved")

        self.repo.set_progress(run.id, PROGRESS_GENERATED)
        logger.info(_event("queries_saved", run_id=run.id, prompts=len(prompts), source=source))
        return prompts

    def query_platforms(self, run: ScanRun, prompts: List[SavedPrompt]) -> List[PlatformAnswer]:
        if self.repo.has_rows(LLMResponseRow, run.id):
            logger.info("run %s: llm responses exist, skipping querying", run.id)
            return self.repo.load_answers(run.id)

        self.repo.enter_step(run.id, ScanRunStatus.QUERYING, PROGRESS_QUERYING_START)
        answers = query_all_platforms(
            prompts,
            run.domain,
            run.id,
            provider=self.provider,
            policy=self.policy,
            on_progress=lambda done, total: self.repo.set_progress(run.id, querying_progress(done, total)),
            costs=self.costs,
        )
        self.repo.save_answers(run.id, answers)
        logger.info(
            _event(
                "platforms_queried",
                run_id=run.id,
                answers=len(answers),
                errors=sum(1 for a in answers if a.error),
                mentions=sum(1 for a in answers if a.domain_mentioned),
            )
        )
        return answers

    def score_and_report(self, run: ScanRun, analysis: BusinessAnalysis, answers: List[PlatformAnswer]) -> str:
        scores = calculate_visibility_score(answers)
        top = extract_top_competitors(answers)
        summary = generate_summary(analysis, scores, top, run.domain)

        token = self.repo.save_report(
            run.id,
            {
                "visibility_score": scores.overall,
                "platform_scores": {p: v["score"] for p, v in scores.by_platform.items()},
                "top_competitors": top,
                "summary": summary,
            },
        )

        if self.flags.get(run.lead_id).is_subscriber:
            total = scores.total_queries
            self.repo.save_score_history(
                run.id,
                run.lead_id,
                {
                    "visibility_score": scores.overall,
                    "platform_scores": {p: v["score"] for p, v in scores.by_platform.items()},
                    "platform_mentions": {p: v["mentioned"] for p, v in scores.by_platform.items()},
                    "query_coverage": (100.0 * scores.total_mentions / total) if total else 0.0,
                    "total_queries": total,
                    "total_mentions": scores.total_mentions,
                },
            )

        logger.info(_event("report_saved", run_id=run.id, visibility_score=scores.overall, url_token=token))
        return token

    def complete(self, run: ScanRun) -> ScanRun:
        done = self.repo.update_status(run.id, ScanRunStatus.COMPLETE, PROGRESS_COMPLETE)
        logger.info(_event("scan_complete", run_id=run.id, domain=run.domain))
        return done

    def request_enrichment(self, run: ScanRun) -> bool:
        """Subscribers' scans get the brand-awareness enrichment pass."""
        if self.bus is None or not self.flags.get(run.lead_id).is_subscriber:
            return False
        try:
            self.bus.send(SUBSCRIBER_ENRICH, {"leadId": run.lead_id, "scanRunId": run.id})
        except Exception:
            # The report is already complete; enrichment can be re-requested.
            logger.exception("run %s: failed to request enrichment", run.id)
            return False
        return True

    def fail(self, run_id: str, exc: BaseException) -> str:
        message = user_message_for(exc)
        logger.error(
            _event("scan_failed", run_id=run_id, error_type=type(exc).__name__, error=str(exc)[:500]),
            exc_info=not isinstance(exc, ScanFailed),
        )
        if not self.repo.mark_failed(run_id, message):
            logger.warning("run %s already terminal; failure not recorded", run_id)
        return message

    # -----------------------------
    # All steps, in-process
    # -----------------------------
    def run(
        self,
        domain: str,
        lead_id: str,
        domain_subscription_id: Optional[str] = None,
        scan_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        run = self.start_scan(domain, lead_id, domain_subscription_id, scan_id)
        if ScanRunStatus.is_terminal(run.status):
            logger.info("run %s already %s", run.id, run.status)
            return {"run_id": run.id, "status": run.status}

        try:
            analysis = self.crawl_and_analyze(run)
            prompts = self.generate_queries(run, analysis)
            answers = self.query_platforms(run, prompts)
            token = self.score_and_report(run, analysis, answers)
            self.complete(run)
        except Exception as e:
            message = self.fail(run.id, e)
            return {"run_id": run.id, "status": ScanRunStatus.FAILED, "error_message": message}

        enrich = self.request_enrichment(run)
        return {"run_id": run.id, "status": ScanRunStatus.COMPLETE, "url_token": token, "enrichment_requested": enrich}
