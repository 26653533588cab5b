from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(320), index=True)
    domain = Column(String(255), nullable=False)
    tier = Column(String(16), nullable=False, default="free")  # free|starter|pro|agency
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class DomainSubscriptionRow(Base):
    __tablename__ = "domain_subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    domain = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default="incomplete")
    tier = Column(String(16), nullable=False, default="starter")
    scan_schedule_day = Column(Integer)  # 0=Sunday .. 6=Saturday
    scan_schedule_hour = Column(Integer)  # 0..23, local to scan_timezone
    scan_timezone = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_domain_subscriptions_status", "status"),
        UniqueConstraint("lead_id", "domain", name="uq_domain_subscriptions_lead_domain"),
    )


class ScanRunRow(Base):
    __tablename__ = "scan_runs"

    id = Column(String(36), primary_key=True, default=_uuid)
    domain = Column(String(255), nullable=False)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    domain_subscription_id = Column(String(36), ForeignKey("domain_subscriptions.id", ondelete="SET NULL"))
    status = Column(String(16), nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    enrichment_status = Column(String(16))  # processing|complete|failed
    enrichment_token = Column(String(36))
    enrichment_started_at = Column(DateTime(timezone=True))
    enrichment_completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_scan_runs_lead_status", "lead_id", "status"),
        Index("ix_scan_runs_subscription_status", "domain_subscription_id", "status"),
    )


# One in-flight run per (domain_subscription_id ?? lead_id), enforced by the database.
_ACTIVE_SCAN_STATUSES = ("pending", "crawling", "analyzing", "generating", "querying")
Index(
    "uq_scan_runs_one_active",
    func.coalesce(ScanRunRow.domain_subscription_id, ScanRunRow.lead_id),
    unique=True,
    postgresql_where=ScanRunRow.status.in_(_ACTIVE_SCAN_STATUSES),
    sqlite_where=ScanRunRow.status.in_(_ACTIVE_SCAN_STATUSES),
)


class SiteAnalysisRow(Base):
    __tablename__ = "site_analyses"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False)
    business_type = Column(Text, nullable=False)
    business_name = Column(Text)
    industry = Column(Text)
    location = Column(Text)
    services = Column(JSON, nullable=False, default=list)
    products = Column(JSON, nullable=False, default=list)
    key_phrases = Column(JSON, nullable=False, default=list)
    target_audience = Column(Text)
    pages_crawled = Column(Integer, nullable=False, default=0)
    raw_content = Column(Text)
    tld_country = Column(String(64))
    has_sitemap = Column(Boolean, nullable=False, default=False)
    has_meta_descriptions = Column(Boolean, nullable=False, default=False)

    __table_args__ = (UniqueConstraint("run_id", name="uq_site_analyses_run_id"),)


class QueryResearchResultRow(Base):
    __tablename__ = "query_research_results"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String(16), nullable=False)
    suggested_query = Column(Text, nullable=False)
    category = Column(String(32), nullable=False)
    selected_for_scan = Column(Boolean, nullable=False, default=False)


class ScanPromptRow(Base):
    __tablename__ = "scan_prompts"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    prompt_text = Column(Text, nullable=False)
    category = Column(String(32), nullable=False)
    source = Column(String(16), nullable=False, default="researched")  # researched|fallback
    relevance_score = Column(Integer, nullable=False, default=0)
    suggested_by = Column(JSON, nullable=False, default=list)
    sort_order = Column(Integer, nullable=False, default=0)


class LLMResponseRow(Base):
    __tablename__ = "llm_responses"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    prompt_id = Column(String(36), ForeignKey("scan_prompts.id", ondelete="CASCADE"), nullable=False)
    platform = Column(String(16), nullable=False)
    response_text = Column(Text)
    domain_mentioned = Column(Boolean, nullable=False, default=False)
    mention_position = Column(Integer)
    competitors_mentioned = Column(JSON, nullable=False, default=list)
    response_time_ms = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)


class ReportRow(Base):
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False)
    url_token = Column(String(32), nullable=False)
    visibility_score = Column(Integer, nullable=False, default=0)
    platform_scores = Column(JSON, nullable=False, default=dict)
    top_competitors = Column(JSON, nullable=False, default=list)
    summary = Column(Text)
    competitive_summary = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("run_id", name="uq_reports_run_id"),)


class ScoreHistoryRow(Base):
    __tablename__ = "score_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    visibility_score = Column(Integer, nullable=False, default=0)
    platform_scores = Column(JSON, nullable=False, default=dict)
    platform_mentions = Column(JSON, nullable=False, default=dict)
    query_coverage = Column(Float, nullable=False, default=0.0)
    total_queries = Column(Integer, nullable=False, default=0)
    total_mentions = Column(Integer, nullable=False, default=0)
    recorded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("run_id", name="uq_score_history_run_id"),)


class BrandAwarenessResultRow(Base):
    __tablename__ = "brand_awareness_results"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("scan_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String(16), nullable=False)
    query_type = Column(String(32), nullable=False)
    tested_entity = Column(Text, nullable=False)
    tested_attribute = Column(Text)
    entity_recognized = Column(Boolean, nullable=False, default=False)
    attribute_mentioned = Column(Boolean, nullable=False, default=False)
    response_text = Column(Text)
    confidence_score = Column(Integer, nullable=False, default=0)
    compared_to = Column(Text)
    positioning = Column(String(16))
    response_time_ms = Column(Integer, nullable=False, default=0)


class SubscriberCompetitorRow(Base):
    __tablename__ = "subscriber_competitors"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class ApiCostRow(Base):
    __tablename__ = "api_costs"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), nullable=False, index=True)
    step = Column(String(64), nullable=False)
    model = Column(String(128))
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    cost_cents = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class DispatchLogRow(Base):
    __tablename__ = "dispatch_log"

    id = Column(String(36), primary_key=True, default=_uuid)
    domain_subscription_id = Column(String(36), nullable=False)
    # UTC hour the dispatcher fired for, e.g. "2026-10-18T22:00Z"
    scheduled_hour = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("domain_subscription_id", "scheduled_hour", name="uq_dispatch_log_sub_hour"),
    )
