from __future__ import annotations

import json

import pytest

from conftest import FakeProvider
from outrank.analyzer import LLMAnalyzer, parse_analysis
from outrank.geo import extract_tld_country
from outrank.llm.costs import CostTracker
from outrank.models import BusinessAnalysis
from outrank.schema import ApiCostRow


class TestParse:
    def test_full_object(self):
        analysis = parse_analysis(
            {
                "businessName": "Acme Plumbing",
                "businessType": "plumbing services",
                "services": ["drains", " ", "hot water"],
                "products": None,
                "location": "Sydney, Australia",
                "targetAudience": "homeowners",
                "keyPhrases": ["24/7"],
                "industry": "Home Services",
            }
        )

        assert analysis.business_name == "Acme Plumbing"
        assert analysis.services == ["drains", "hot water"]
        assert analysis.products == []
        assert analysis.industry == "Home Services"

    def test_lists_are_capped(self):
        analysis = parse_analysis({"businessType": "shop", "services": [f"s{i}" for i in range(15)]})

        assert len(analysis.services) == 10

    def test_missing_fields(self):
        analysis = parse_analysis({})

        assert analysis.business_type == "Unknown business type"
        assert analysis.industry == "General"
        assert analysis.location is None


class TestLLMAnalyzer:
    def test_uses_tld_country_when_location_missing(self):
        provider = FakeProvider(lambda p, q: json.dumps({"businessType": "bakery", "location": None}))

        analysis = LLMAnalyzer(provider).analyze("Domain: crumbs.co.nz", "New Zealand")

        assert analysis.location == "New Zealand"
        assert "based in New Zealand" in provider.calls[0][1]

    def test_stated_location_wins(self):
        provider = FakeProvider(lambda p, q: json.dumps({"businessType": "bakery", "location": "Auckland"}))

        assert LLMAnalyzer(provider).analyze("...", "New Zealand").location == "Auckland"

    def test_content_is_truncated(self):
        provider = FakeProvider(lambda p, q: "{}")

        LLMAnalyzer(provider).analyze("z" * 20000)

        prompt = provider.calls[0][1]
        assert "z" * 8000 in prompt
        assert "z" * 8001 not in prompt

    @pytest.mark.parametrize("reply", ["I cannot analyze this.", "[]", "{}"])
    def test_unusable_reply_gives_default(self, reply):
        analysis = LLMAnalyzer(FakeProvider(lambda p, q: reply)).analyze("...")

        assert analysis == BusinessAnalysis.default()

    def test_provider_error_gives_default(self):
        analysis = LLMAnalyzer(FakeProvider(failing={"chatgpt"})).analyze("...")

        assert analysis == BusinessAnalysis.default()

    def test_cost_tracked(self, repo):
        provider = FakeProvider(lambda p, q: json.dumps({"businessType": "bakery"}))

        LLMAnalyzer(provider, costs=CostTracker(repo), run_id="run-1").analyze("...")

        with repo.session() as s:
            assert s.query(ApiCostRow).filter_by(run_id="run-1", step="analyze").count() == 1


class TestTldCountry:
    @pytest.mark.parametrize(
        "domain,country",
        [
            ("acme.com.au", "Australia"),
            ("acme.au", "Australia"),
            ("shop.co.uk", "United Kingdom"),
            ("crumbs.co.nz", "New Zealand"),
            ("firma.de", "Germany"),
            ("acme.co", "Colombia"),
            ("acme.com", None),
            ("", None),
        ],
    )
    def test_country(self, domain, country):
        assert extract_tld_country(domain) == country
