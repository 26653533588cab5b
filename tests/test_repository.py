from __future__ import annotations

import pytest
from sqlalchemy import false, select
from sqlalchemy.exc import IntegrityError

from outrank.errors import InvalidTransition, ScanAlreadyInFlight, ScanNotFound
from outrank.models import (
    BusinessAnalysis,
    CrawlResult,
    PlatformAnswer,
    RawQuerySuggestion,
    ResearchedQuery,
    ScanRunStatus,
)
from outrank.schema import QueryResearchResultRow, ScanPromptRow, ScanRunRow, SiteAnalysisRow


class TestReplaceAll:
    def test_rewrites_only_the_runs_rows(self, repo):
        repo.replace_all(ScanPromptRow, "run-a", [{"prompt_text": "a1", "category": "general"}])
        repo.replace_all(ScanPromptRow, "run-b", [{"prompt_text": "b1", "category": "general"}])

        repo.replace_all(
            ScanPromptRow,
            "run-a",
            [{"prompt_text": "a2", "category": "review"}, {"prompt_text": "a3", "category": "review"}],
        )

        assert {p.text for p in repo.load_prompts("run-a")} == {"a2", "a3"}
        assert [p.text for p in repo.load_prompts("run-b")] == ["b1"]

    def test_repeat_is_idempotent(self, repo):
        rows = [{"prompt_text": "q", "category": "general", "sort_order": 0}]
        repo.replace_all(ScanPromptRow, "run-a", rows)
        repo.replace_all(ScanPromptRow, "run-a", rows)

        assert len(repo.load_prompts("run-a")) == 1

    def test_preassigned_ids_are_kept(self, repo):
        ids = repo.replace_all(ScanPromptRow, "run-a", [{"id": "fixed-id", "prompt_text": "q", "category": "general"}])

        assert ids == ["fixed-id"]

    def test_upsert_by_run(self, repo):
        first = repo.upsert_by_run(SiteAnalysisRow, "run-a", {"business_type": "bakery"})
        second = repo.upsert_by_run(SiteAnalysisRow, "run-a", {"business_type": "cafe"})

        assert first == second
        assert repo.load_site_analysis("run-a").business_type == "cafe"


class TestScanRuns:
    def test_in_flight_run_refuses_second(self, repo, make_lead):
        lead_id = make_lead()
        first = repo.create_scan_run("acme.com.au", lead_id)

        with pytest.raises(ScanAlreadyInFlight) as exc:
            repo.create_scan_run("acme.com.au", lead_id)

        assert exc.value.run_id == first.id
        assert exc.value.dispatch_key == lead_id

    def test_key_is_subscription_when_present(self, repo, make_subscription):
        sub_id, lead_id = make_subscription()
        repo.create_scan_run("acme.com.au", lead_id, sub_id)

        # a one-off scan for the same lead is a different key
        repo.create_scan_run("acme.com.au", lead_id)

        with pytest.raises(ScanAlreadyInFlight):
            repo.create_scan_run("acme.com.au", lead_id, sub_id)

    def test_terminal_run_frees_the_key(self, repo, make_lead):
        lead_id = make_lead()
        first = repo.create_scan_run("acme.com.au", lead_id)
        repo.mark_failed(first.id, "nope")

        second = repo.create_scan_run("acme.com.au", lead_id)

        assert second.id != first.id

    def test_existing_run_id_is_returned(self, repo, make_lead):
        lead_id = make_lead()
        run = repo.create_scan_run("acme.com.au", lead_id, run_id="scan-1")

        again = repo.create_scan_run("acme.com.au", lead_id, run_id="scan-1")

        assert again.id == run.id == "scan-1"

    def test_transitions(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())

        crawling = repo.update_status(run.id, ScanRunStatus.CRAWLING, 10)
        assert crawling.started_at is not None

        with pytest.raises(InvalidTransition):
            repo.update_status(run.id, ScanRunStatus.PENDING, 0)

        repo.update_status(run.id, ScanRunStatus.QUERYING, 50)
        done = repo.update_status(run.id, ScanRunStatus.COMPLETE, 100)
        assert done.completed_at is not None

        with pytest.raises(InvalidTransition):
            repo.update_status(run.id, ScanRunStatus.FAILED, 100)

    def test_mark_failed_does_not_touch_terminal_run(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())
        repo.update_status(run.id, ScanRunStatus.COMPLETE, 100)

        assert repo.mark_failed(run.id, "late failure") is False
        assert repo.get_scan_run(run.id).status == ScanRunStatus.COMPLETE

    def test_progress_is_clamped(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())
        repo.set_progress(run.id, 140)

        assert repo.get_scan_run(run.id).progress == 100

    def test_unknown_run(self, repo):
        with pytest.raises(ScanNotFound):
            repo.get_scan_run("missing")

    def test_enter_step_never_moves_back(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())
        repo.update_status(run.id, ScanRunStatus.ANALYZING, 25)

        again = repo.enter_step(run.id, ScanRunStatus.CRAWLING, 10)

        assert (again.status, again.progress) == (ScanRunStatus.ANALYZING, 25)
        assert repo.enter_step(run.id, ScanRunStatus.ANALYZING, 25).status == ScanRunStatus.ANALYZING
        assert repo.enter_step(run.id, ScanRunStatus.GENERATING, 35).status == ScanRunStatus.GENERATING

    def test_enter_step_on_finished_run_is_refused(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())
        repo.mark_failed(run.id, "nope")

        with pytest.raises(InvalidTransition):
            repo.enter_step(run.id, ScanRunStatus.CRAWLING, 10)


class TestOneActiveRunPerKey:
    def test_database_rejects_a_second_active_row(self, repo, make_subscription):
        sub_id, lead_id = make_subscription()
        repo.create_scan_run("acme.com.au", lead_id, sub_id)

        with pytest.raises(IntegrityError):
            with repo.session() as s:
                s.add(ScanRunRow(domain="acme.com.au", lead_id=lead_id, domain_subscription_id=sub_id, status="querying"))

    def test_finished_rows_do_not_count(self, repo, make_lead):
        lead_id = make_lead()
        with repo.session() as s:
            s.add(ScanRunRow(domain="acme.com.au", lead_id=lead_id, status="complete"))
            s.add(ScanRunRow(domain="acme.com.au", lead_id=lead_id, status="failed"))

        assert repo.create_scan_run("acme.com.au", lead_id).status == ScanRunStatus.PENDING

    def test_racing_writer_gets_in_flight(self, repo, make_subscription, monkeypatch):
        sub_id, lead_id = make_subscription()
        first = repo.create_scan_run("acme.com.au", lead_id, sub_id)
        real_query = repo._active_run_query
        checks = []

        def stale_check(*args):
            # The second writer checks before the first has committed.
            checks.append(args)
            return select(ScanRunRow).where(false()) if len(checks) == 1 else real_query(*args)

        monkeypatch.setattr(repo, "_active_run_query", stale_check)

        with pytest.raises(ScanAlreadyInFlight) as exc:
            repo.create_scan_run("acme.com.au", lead_id, sub_id)

        assert exc.value.run_id == first.id
        with repo.session() as s:
            assert s.query(ScanRunRow).count() == 1

    def test_racing_redelivery_returns_the_same_run(self, repo, make_lead, monkeypatch):
        lead_id = make_lead()
        first = repo.create_scan_run("acme.com.au", lead_id, run_id="scan-1")

        def lost_race(domain, lead_id, sub_id, run_id):
            # The other writer committed between our check and our insert.
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))

        monkeypatch.setattr(repo, "_insert_scan_run", lost_race)

        again = repo.create_scan_run("acme.com.au", lead_id, run_id="scan-1")

        assert again.id == first.id


class TestArtifacts:
    def test_research_marks_selected_suggestions(self, repo):
        suggestions = [
            RawQuerySuggestion("best plumber sydney", "finding_provider", "chatgpt"),
            RawQuerySuggestion("cheap plumber sydney", "finding_provider", "claude"),
            RawQuerySuggestion("gas fitter", "service", "gemini"),
        ]
        selected = [ResearchedQuery("best plumber sydney", "finding_provider", frozenset({"chatgpt", "claude"}), 20)]

        prompts = repo.save_research("run-a", suggestions, selected, "researched")

        assert [p.text for p in prompts] == ["best plumber sydney"]
        with repo.session() as s:
            flags = {r.suggested_query: r.selected_for_scan for r in s.query(QueryResearchResultRow).all()}
            prompt_row = s.query(ScanPromptRow).one()
            assert prompt_row.suggested_by == ["chatgpt", "claude"]
            assert prompt_row.source == "researched"
        assert flags == {"best plumber sydney": True, "cheap plumber sydney": False, "gas fitter": False}

    def test_answers_round_trip_in_prompt_order(self, repo):
        prompts = repo.save_research(
            "run-a",
            [],
            [
                ResearchedQuery("first question", "general", frozenset(), 5),
                ResearchedQuery("second question", "general", frozenset(), 5),
            ],
            "fallback",
        )
        answers = [
            PlatformAnswer(prompts[1].id, "claude", prompts[1].text, "b", True, 2, ["Fixit"], 30),
            PlatformAnswer(prompts[0].id, "chatgpt", prompts[0].text, "", False, None, [], 0, error="timeout"),
        ]

        assert repo.save_answers("run-a", answers) == 2
        loaded = repo.load_answers("run-a")

        assert [a.query for a in loaded] == ["first question", "second question"]
        assert loaded[0].error == "timeout"
        assert loaded[1].competitors_mentioned == ["Fixit"]

    def test_report_token_is_stable(self, repo):
        token = repo.save_report("run-a", {"visibility_score": 10})
        again = repo.save_report("run-a", {"visibility_score": 40})

        assert token == again
        assert repo.get_report("run-a")["visibility_score"] == 40

    def test_site_analysis_round_trip(self, repo):
        analysis = BusinessAnalysis(business_type="bakery", business_name="Crumbs", services=["cakes"])
        crawl = CrawlResult(domain="crumbs.com", pages=[], total_pages=0, has_sitemap=True)

        repo.save_site_analysis("run-a", analysis, crawl, "text", None)

        assert repo.load_site_analysis("run-a") == analysis


class TestLeadsAndSubscriptions:
    def test_tier_prefers_active_subscription(self, repo, make_subscription):
        _, lead_id = make_subscription(tier="pro")

        assert repo.get_user_tier(lead_id) == "pro"

    def test_tier_falls_back_to_lead_then_free(self, repo, make_lead, make_subscription):
        lead_id = make_lead(tier="starter")
        make_subscription(lead_id=lead_id, status="canceled", tier="agency")

        assert repo.get_user_tier(lead_id) == "starter"
        assert repo.get_user_tier("unknown") == "free"

    def test_active_competitors(self, repo, make_lead, add_competitor):
        lead_id = make_lead()
        add_competitor(lead_id, "Fixit")
        add_competitor(lead_id, "Gone", active=False)

        assert repo.active_competitors(lead_id) == ["Fixit"]

    def test_active_subscriptions_carry_email(self, repo, make_subscription):
        make_subscription("a.com", status="active")
        make_subscription("b.com", status="canceled")

        subs = repo.active_subscriptions()

        assert [s.domain for s in subs] == ["a.com"]
        assert subs[0].email == "owner@acme.com.au"

    def test_record_dispatch_is_insert_if_absent(self, repo):
        assert repo.record_dispatch("sub-1", "2026-10-18T22:00Z") is True
        assert repo.record_dispatch("sub-1", "2026-10-18T22:00Z") is False
        assert repo.record_dispatch("sub-1", "2026-10-18T23:00Z") is True

        repo.forget_dispatch("sub-1", "2026-10-18T22:00Z")
        assert repo.record_dispatch("sub-1", "2026-10-18T22:00Z") is True

    def test_update_schedule_unknown_subscription(self, repo):
        with pytest.raises(KeyError):
            repo.update_subscription_schedule("missing", 1, 9, "Australia/Sydney")


class TestEnrichmentTokens:
    def test_newer_claim_supersedes(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())
        old = repo.claim_enrichment(run.id)
        new = repo.claim_enrichment(run.id)

        assert repo.enrichment_is_current(run.id, old) is False
        assert repo.enrichment_is_current(run.id, new) is True
        assert repo.finish_enrichment(run.id, old) is False
        assert repo.finish_enrichment(run.id, new) is True
        assert repo.get_scan_run(run.id).enrichment_status == "complete"

    def test_fail_enrichment_fails_the_run(self, repo, make_lead):
        run = repo.create_scan_run("acme.com.au", make_lead())
        repo.update_status(run.id, ScanRunStatus.COMPLETE, 100)
        token = repo.claim_enrichment(run.id)

        assert repo.fail_enrichment(run.id, token, "extended analysis failed") is True

        stored = repo.get_scan_run(run.id)
        assert stored.status == ScanRunStatus.FAILED
        assert stored.enrichment_status == "failed"
        assert stored.error_message == "extended analysis failed"
