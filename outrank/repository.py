"""
Data-store operations for the scan pipeline.

Every write here is keyed by run id / subscription id and is safe to repeat:
- `replace_all()` deletes a run's rows in a table and inserts the new set in the
  same transaction (idempotent rewrite).
- `upsert_by_run()` updates the single row owned by a run, or inserts it.
- `record_dispatch()` is insert-if-absent on (subscription, UTC hour).

The orchestrator and the dispatcher are the only writers; nothing here appends
blindly, so a retried step never duplicates data.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Type

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .errors import InvalidTransition, ScanAlreadyInFlight, ScanNotFound
from .models import (
    BrandAwarenessResult,
    BusinessAnalysis,
    CrawlResult,
    DomainSubscription,
    PlatformAnswer,
    RawQuerySuggestion,
    ResearchedQuery,
    SavedPrompt,
    ScanRun,
    ScanRunStatus,
    SubscriptionStatus,
)
from .schema import (
    ApiCostRow,
    Base,
    BrandAwarenessResultRow,
    DispatchLogRow,
    DomainSubscriptionRow,
    Lead,
    LLMResponseRow,
    QueryResearchResultRow,
    ReportRow,
    ScanPromptRow,
    ScanRunRow,
    ScoreHistoryRow,
    SiteAnalysisRow,
    SubscriberCompetitorRow,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_scan_run(row: ScanRunRow) -> ScanRun:
    return ScanRun(
        id=row.id,
        domain=row.domain,
        lead_id=row.lead_id,
        status=row.status,
        progress=row.progress or 0,
        domain_subscription_id=row.domain_subscription_id,
        error_message=row.error_message,
        started_at=row.started_at,
        completed_at=row.completed_at,
        enrichment_status=row.enrichment_status,
        enrichment_token=row.enrichment_token,
        updated_at=row.updated_at,
    )


def _to_subscription(row: DomainSubscriptionRow, email: Optional[str] = None) -> DomainSubscription:
    return DomainSubscription(
        id=row.id,
        lead_id=row.lead_id,
        domain=row.domain,
        status=row.status,
        scan_schedule_day=row.scan_schedule_day,
        scan_schedule_hour=row.scan_schedule_hour,
        scan_timezone=row.scan_timezone,
        tier=row.tier,
        email=email,
    )


class ScanRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    @classmethod
    def from_env(cls) -> "ScanRepository":
        from .db import get_engine

        return cls(get_engine())

    def ensure_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        s: Session = self._sessions()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    # -----------------------------
    # Generic idempotent writes
    # -----------------------------
    def replace_all(self, model: Type[Any], run_id: str, rows: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Replace every row of `model` owned by `run_id` with `rows`.

        Returns the ids of the inserted rows, in input order. Callers may
        pre-assign `id` in a row dict so they can link child rows.
        """
        ids: List[str] = []
        with self.session() as s:
            s.execute(delete(model).where(model.run_id == run_id))
            for values in rows:
                values = dict(values)
                values.setdefault("id", str(uuid.uuid4()))
                s.add(model(run_id=run_id, **values))
                ids.append(values["id"])
        return ids

    def upsert_by_run(self, model: Type[Any], run_id: str, values: Dict[str, Any]) -> str:
        """Update the single row of `model` keyed by `run_id`, or insert it."""
        with self.session() as s:
            row = s.execute(select(model).where(model.run_id == run_id)).scalar_one_or_none()
            if row is None:
                row = model(run_id=run_id, **values)
                s.add(row)
            else:
                for k, v in values.items():
                    setattr(row, k, v)
            s.flush()
            return row.id

    # -----------------------------
    # Scan runs
    # -----------------------------
    def _active_run_query(self, lead_id: str, domain_subscription_id: Optional[str]):
        q = select(ScanRunRow).where(ScanRunRow.status.in_(sorted(ScanRunStatus.ACTIVE)))
        if domain_subscription_id:
            return q.where(ScanRunRow.domain_subscription_id == domain_subscription_id)
        return q.where(ScanRunRow.lead_id == lead_id, ScanRunRow.domain_subscription_id.is_(None))

    def find_active_run(self, lead_id: str, domain_subscription_id: Optional[str] = None) -> Optional[ScanRun]:
        with self.session() as s:
            row = s.execute(self._active_run_query(lead_id, domain_subscription_id).limit(1)).scalar_one_or_none()
            return _to_scan_run(row) if row is not None else None

    def create_scan_run(
        self,
        domain: str,
        lead_id: str,
        domain_subscription_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> ScanRun:
        """
        Create a pending run, enforcing one in-flight run per
        (domain_subscription_id ?? lead_id).

        If `run_id` already exists it is returned unchanged, so a redelivered
        event resumes the same run instead of creating a second one.

        The check below is backed by the `uq_scan_runs_one_active` index, so
        two writers racing past it still cannot both insert.
        """
        try:
            return self._insert_scan_run(domain, lead_id, domain_subscription_id, run_id)
        except IntegrityError:
            if run_id:
                with self.session() as s:
                    existing = s.get(ScanRunRow, run_id)
                    if existing is not None:
                        return _to_scan_run(existing)
            active = self.find_active_run(lead_id, domain_subscription_id)
            raise ScanAlreadyInFlight(domain_subscription_id or lead_id, active.id if active else None)

    def _insert_scan_run(
        self,
        domain: str,
        lead_id: str,
        domain_subscription_id: Optional[str],
        run_id: Optional[str],
    ) -> ScanRun:
        with self.session() as s:
            if run_id:
                existing = s.get(ScanRunRow, run_id)
                if existing is not None:
                    return _to_scan_run(existing)

            in_flight = s.execute(
                self._active_run_query(lead_id, domain_subscription_id).limit(1)
            ).scalar_one_or_none()
            if in_flight is not None:
                raise ScanAlreadyInFlight(domain_subscription_id or lead_id, in_flight.id)

            row = ScanRunRow(
                id=run_id or str(uuid.uuid4()),
                domain=domain,
                lead_id=lead_id,
                domain_subscription_id=domain_subscription_id,
                status=ScanRunStatus.PENDING,
                progress=0,
            )
            s.add(row)
            s.flush()
            return _to_scan_run(row)

    def get_scan_run(self, run_id: str) -> ScanRun:
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None:
                raise ScanNotFound(run_id)
            return _to_scan_run(row)

    def update_status(self, run_id: str, status: str, progress: int) -> ScanRun:
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None:
                raise ScanNotFound(run_id)
            if not ScanRunStatus.can_transition(row.status, status):
                raise InvalidTransition(run_id, row.status, status)
            row.status = status
            row.progress = max(0, min(100, int(progress)))
            if status == ScanRunStatus.CRAWLING and row.started_at is None:
                row.started_at = _utcnow()
            if ScanRunStatus.is_terminal(status):
                row.completed_at = _utcnow()
            return _to_scan_run(row)

    def enter_step(self, run_id: str, status: str, progress: int) -> ScanRun:
        """
        Checkpoint the start of a pipeline step.

        A retried step may start in an earlier phase than the run already
        reached (a crawl retried after analysis failed). The run keeps its
        later status then, so the retry resumes instead of moving backwards.
        """
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None:
                raise ScanNotFound(run_id)
            if not ScanRunStatus.is_terminal(row.status) and ScanRunStatus.is_behind(row.status, status):
                logger.info("run %s: already %s, not moving back to %s", run_id, row.status, status)
                return _to_scan_run(row)
        return self.update_status(run_id, status, progress)

    def set_progress(self, run_id: str, progress: int) -> None:
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None:
                raise ScanNotFound(run_id)
            if not ScanRunStatus.is_terminal(row.status):
                row.progress = max(0, min(100, int(progress)))

    def mark_failed(self, run_id: str, user_message: str) -> bool:
        """Move a run to `failed`. Returns False if it already reached a terminal state."""
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None:
                raise ScanNotFound(run_id)
            if ScanRunStatus.is_terminal(row.status):
                return False
            row.status = ScanRunStatus.FAILED
            row.error_message = user_message
            row.completed_at = _utcnow()
            return True

    # -----------------------------
    # Pipeline artifacts
    # -----------------------------
    def save_site_analysis(
        self,
        run_id: str,
        analysis: BusinessAnalysis,
        crawl: CrawlResult,
        raw_content: str,
        tld_country: Optional[str],
    ) -> str:
        return self.upsert_by_run(
            SiteAnalysisRow,
            run_id,
            {
                "business_type": analysis.business_type,
                "business_name": analysis.business_name,
                "industry": analysis.industry,
                "location": analysis.location,
                "services": list(analysis.services),
                "products": list(analysis.products),
                "key_phrases": list(analysis.key_phrases),
                "target_audience": analysis.target_audience,
                "pages_crawled": crawl.total_pages,
                "raw_content": raw_content[:50000],
                "tld_country": tld_country,
                "has_sitemap": crawl.has_sitemap,
                "has_meta_descriptions": any(p.has_meta_description for p in crawl.pages),
            },
        )

    def load_site_analysis(self, run_id: str) -> Optional[BusinessAnalysis]:
        with self.session() as s:
            row = s.execute(select(SiteAnalysisRow).where(SiteAnalysisRow.run_id == run_id)).scalar_one_or_none()
            if row is None:
                return None
            return BusinessAnalysis(
                business_type=row.business_type,
                industry=row.industry or "General",
                business_name=row.business_name,
                location=row.location,
                services=list(row.services or []),
                products=list(row.products or []),
                key_phrases=list(row.key_phrases or []),
                target_audience=row.target_audience,
            )

    def save_research(
        self,
        run_id: str,
        suggestions: Sequence[RawQuerySuggestion],
        selected: Sequence[ResearchedQuery],
        source: str,
    ) -> List[SavedPrompt]:
        chosen = {q.query for q in selected}
        self.replace_all(
            QueryResearchResultRow,
            run_id,
            (
                {
                    "platform": s.platform,
                    "suggested_query": s.query,
                    "category": s.category,
                    "selected_for_scan": s.query in chosen,
                }
                for s in suggestions
            ),
        )
        prompt_rows = [
            {
                "prompt_text": q.query,
                "category": q.category,
                "source": source,
                "relevance_score": q.relevance_score,
                "suggested_by": sorted(q.suggested_by),
                "sort_order": i,
            }
            for i, q in enumerate(selected)
        ]
        ids = self.replace_all(ScanPromptRow, run_id, prompt_rows)
        return [SavedPrompt(id=pid, text=r["prompt_text"], category=r["category"]) for pid, r in zip(ids, prompt_rows)]

    def load_prompts(self, run_id: str) -> List[SavedPrompt]:
        with self.session() as s:
            rows = s.execute(
                select(ScanPromptRow).where(ScanPromptRow.run_id == run_id).order_by(ScanPromptRow.sort_order)
            ).scalars().all()
            return [SavedPrompt(id=r.id, text=r.prompt_text, category=r.category) for r in rows]

    def save_answers(self, run_id: str, answers: Sequence[PlatformAnswer]) -> int:
        ids = self.replace_all(
            LLMResponseRow,
            run_id,
            (
                {
                    "prompt_id": a.prompt_id,
                    "platform": a.platform,
                    "response_text": a.response,
                    "domain_mentioned": a.domain_mentioned,
                    "mention_position": a.mention_position,
                    "competitors_mentioned": list(a.competitors_mentioned),
                    "response_time_ms": a.response_time_ms,
                    "error_message": a.error,
                }
                for a in answers
            ),
        )
        return len(ids)

    def load_answers(self, run_id: str) -> List[PlatformAnswer]:
        with self.session() as s:
            rows = s.execute(
                select(LLMResponseRow, ScanPromptRow.prompt_text)
                .join(ScanPromptRow, ScanPromptRow.id == LLMResponseRow.prompt_id)
                .where(LLMResponseRow.run_id == run_id)
                .order_by(ScanPromptRow.sort_order)
            ).all()
            return [
                PlatformAnswer(
                    prompt_id=r.prompt_id,
                    platform=r.platform,
                    query=text,
                    response=r.response_text or "",
                    domain_mentioned=bool(r.domain_mentioned),
                    mention_position=r.mention_position,
                    competitors_mentioned=list(r.competitors_mentioned or []),
                    response_time_ms=r.response_time_ms or 0,
                    error=r.error_message,
                )
                for r, text in rows
            ]

    def save_report(self, run_id: str, values: Dict[str, Any]) -> str:
        with self.session() as s:
            row = s.execute(select(ReportRow).where(ReportRow.run_id == run_id)).scalar_one_or_none()
            if row is None:
                row = ReportRow(run_id=run_id, url_token=uuid.uuid4().hex[:16], **values)
                s.add(row)
            else:
                # url_token stays stable across retries so links already sent keep working
                for k, v in values.items():
                    setattr(row, k, v)
            s.flush()
            return row.url_token

    def get_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.session() as s:
            row = s.execute(select(ReportRow).where(ReportRow.run_id == run_id)).scalar_one_or_none()
            if row is None:
                return None
            return {
                "url_token": row.url_token,
                "visibility_score": row.visibility_score,
                "platform_scores": dict(row.platform_scores or {}),
                "top_competitors": list(row.top_competitors or []),
                "summary": row.summary,
                "competitive_summary": row.competitive_summary,
            }

    def save_score_history(self, run_id: str, lead_id: str, values: Dict[str, Any]) -> str:
        return self.upsert_by_run(ScoreHistoryRow, run_id, {"lead_id": lead_id, "recorded_at": _utcnow(), **values})

    def save_competitive_summary(self, run_id: str, summary: Dict[str, Any]) -> None:
        with self.session() as s:
            row = s.execute(select(ReportRow).where(ReportRow.run_id == run_id)).scalar_one_or_none()
            if row is None:
                logger.warning("No report for run %s; competitive summary not saved", run_id)
                return
            row.competitive_summary = summary

    def save_brand_awareness(self, run_id: str, results: Sequence[BrandAwarenessResult]) -> int:
        ids = self.replace_all(
            BrandAwarenessResultRow,
            run_id,
            (
                {
                    "platform": r.platform,
                    "query_type": r.query_type,
                    "tested_entity": r.tested_entity,
                    "tested_attribute": r.tested_attribute,
                    "entity_recognized": r.recognized,
                    "attribute_mentioned": r.attribute_mentioned,
                    "response_text": r.response_text,
                    "confidence_score": r.confidence_score,
                    "compared_to": r.compared_to,
                    "positioning": r.positioning,
                    "response_time_ms": r.response_time_ms,
                }
                for r in results
            ),
        )
        return len(ids)

    def has_rows(self, model: Type[Any], run_id: str) -> bool:
        with self.session() as s:
            return s.execute(select(model.id).where(model.run_id == run_id).limit(1)).first() is not None

    def record_api_cost(
        self, run_id: str, step: str, model: str, input_tokens: int, output_tokens: int, cost_cents: float
    ) -> None:
        with self.session() as s:
            s.add(
                ApiCostRow(
                    run_id=run_id,
                    step=step,
                    model=model,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost_cents=cost_cents,
                )
            )

    # -----------------------------
    # Leads / tiers / competitors
    # -----------------------------
    def get_user_tier(self, lead_id: str) -> str:
        """Active subscription tier first, then the lead's own tier, else free."""
        with self.session() as s:
            tier = s.execute(
                select(DomainSubscriptionRow.tier)
                .where(
                    DomainSubscriptionRow.lead_id == lead_id,
                    DomainSubscriptionRow.status == SubscriptionStatus.ACTIVE,
                )
                .limit(1)
            ).scalar_one_or_none()
            if tier:
                return tier
            lead = s.get(Lead, lead_id)
            return (lead.tier if lead is not None else None) or "free"

    def active_competitors(self, lead_id: str, limit: int = 5) -> List[str]:
        with self.session() as s:
            return list(
                s.execute(
                    select(SubscriberCompetitorRow.name)
                    .where(SubscriberCompetitorRow.lead_id == lead_id, SubscriberCompetitorRow.is_active.is_(True))
                    .limit(limit)
                ).scalars()
            )

    # -----------------------------
    # Subscriptions / dispatch
    # -----------------------------
    def active_subscriptions(self) -> List[DomainSubscription]:
        with self.session() as s:
            rows = s.execute(
                select(DomainSubscriptionRow, Lead.email)
                .outerjoin(Lead, Lead.id == DomainSubscriptionRow.lead_id)
                .where(DomainSubscriptionRow.status == SubscriptionStatus.ACTIVE)
                .order_by(DomainSubscriptionRow.created_at, DomainSubscriptionRow.id)
            ).all()
            return [_to_subscription(row, email) for row, email in rows]

    def get_subscription(self, subscription_id: str) -> Optional[DomainSubscription]:
        with self.session() as s:
            row = s.get(DomainSubscriptionRow, subscription_id)
            return _to_subscription(row) if row is not None else None

    def update_subscription_schedule(self, subscription_id: str, day: int, hour: int, tz: str) -> None:
        with self.session() as s:
            row = s.get(DomainSubscriptionRow, subscription_id)
            if row is None:
                raise KeyError(subscription_id)
            row.scan_schedule_day = day
            row.scan_schedule_hour = hour
            row.scan_timezone = tz

    def record_dispatch(self, subscription_id: str, scheduled_hour: str) -> bool:
        """
        Insert-if-absent on (subscription, UTC hour).

        Returns False if this hour was already dispatched for the subscription.
        """
        try:
            with self.session() as s:
                s.add(DispatchLogRow(domain_subscription_id=subscription_id, scheduled_hour=scheduled_hour))
        except IntegrityError:
            return False
        return True

    def forget_dispatch(self, subscription_id: str, scheduled_hour: str) -> None:
        with self.session() as s:
            s.execute(
                delete(DispatchLogRow).where(
                    DispatchLogRow.domain_subscription_id == subscription_id,
                    DispatchLogRow.scheduled_hour == scheduled_hour,
                )
            )

    # -----------------------------
    # Enrichment (last-write-wins per scan run)
    # -----------------------------
    def claim_enrichment(self, run_id: str) -> str:
        token = str(uuid.uuid4())
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None:
                raise ScanNotFound(run_id)
            row.enrichment_token = token
            row.enrichment_status = "processing"
            row.enrichment_started_at = _utcnow()
            row.enrichment_completed_at = None
        return token

    def enrichment_is_current(self, run_id: str, token: str) -> bool:
        with self.session() as s:
            current = s.execute(
                select(ScanRunRow.enrichment_token).where(ScanRunRow.id == run_id)
            ).scalar_one_or_none()
            return current == token

    def finish_enrichment(self, run_id: str, token: str) -> bool:
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None or row.enrichment_token != token:
                return False
            row.enrichment_status = "complete"
            row.enrichment_completed_at = _utcnow()
            return True

    def fail_enrichment(self, run_id: str, token: str, user_message: str) -> bool:
        with self.session() as s:
            row = s.get(ScanRunRow, run_id)
            if row is None or row.enrichment_token != token:
                return False
            row.enrichment_status = "failed"
            row.enrichment_completed_at = _utcnow()
            row.status = ScanRunStatus.FAILED
            row.error_message = user_message
            return True
