from __future__ import annotations

from conftest import FakeProvider
from outrank.llm.policy import PlatformCallPolicy
from outrank.models import BusinessAnalysis, PlatformAnswer, SavedPrompt
from outrank.visibility import (
    SYSTEM_PROMPT,
    calculate_visibility_score,
    check_domain_mention,
    extract_competitors,
    extract_top_competitors,
    generate_summary,
    query_all_platforms,
)


def answer(platform, mentioned, competitors=()) -> PlatformAnswer:
    return PlatformAnswer("p1", platform, "q", "text", mentioned, 1 if mentioned else None, list(competitors), 10)


class TestMentions:
    def test_position_by_thirds(self):
        filler = "x" * 90
        assert check_domain_mention("acme.com.au " + filler, "acme.com.au") == (True, 1)
        assert check_domain_mention(filler[:45] + " acme.com.au " + filler[:45], "acme.com.au") == (True, 2)
        assert check_domain_mention(filler + " acme.com.au", "acme.com.au") == (True, 3)

    def test_brand_label_matches(self):
        assert check_domain_mention("Acme is a great choice.", "acme.com.au") == (True, 1)

    def test_not_mentioned(self):
        assert check_domain_mention("Try Fixit.", "acme.com.au") == (False, None)
        assert check_domain_mention("", "acme.com.au") == (False, None)


class TestCompetitors:
    def test_extracts_recommended_names(self):
        text = "I'd recommend Fixit Plumbing. Drainmasters is popular. Look for companies like Rapid, Flow in your area."

        names = extract_competitors(text, "acme.com.au")

        assert "Fixit Plumbing" in names
        assert "Drainmasters" in names
        assert "Rapid" in names and "Flow" in names

    def test_excludes_own_brand_and_stopwords(self):
        text = "I recommend Acme. The company is fine. This is also true."

        assert extract_competitors(text, "acme.com.au") == []

    def test_capped(self):
        text = " ".join(f"try Company{i}." for i in range(20))

        assert len(extract_competitors(text, "acme.com")) == 10

    def test_top_competitors(self):
        answers = [answer("chatgpt", False, ["Fixit", "Rapid"]), answer("claude", False, ["Fixit"])]

        assert extract_top_competitors(answers) == [{"name": "Fixit", "count": 2}, {"name": "Rapid", "count": 1}]


class TestScoring:
    def test_per_platform_and_overall(self):
        answers = [
            answer("chatgpt", True),
            answer("chatgpt", True),
            answer("claude", True),
            answer("claude", False),
            answer("gemini", False),
            answer("gemini", False),
        ]

        scores = calculate_visibility_score(answers)

        assert scores.overall == 50
        assert scores.by_platform["chatgpt"] == {"mentioned": 2, "total": 2, "score": 100}
        assert scores.by_platform["claude"]["score"] == 50
        assert scores.by_platform["gemini"]["score"] == 0
        assert (scores.total_mentions, scores.total_queries) == (3, 6)

    def test_no_answers(self):
        scores = calculate_visibility_score([])
        assert scores.overall == 0
        assert scores.by_platform == {}

    def test_summary(self):
        scores = calculate_visibility_score([answer("chatgpt", True), answer("claude", False)])
        analysis = BusinessAnalysis(business_type="plumbing services", business_name="Acme Plumbing")

        text = generate_summary(analysis, scores, [{"name": "Fixit", "count": 2}], "acme.com.au")

        assert text.startswith("Acme Plumbing has moderate AI visibility with an overall score of 50%.")
        assert "mentioned in 1 out of 2 AI queries across ChatGPT, and Claude." in text
        assert "Top competitors mentioned by AI include: Fixit." in text

    def test_summary_strong_score_has_no_advice(self):
        scores = calculate_visibility_score([answer("chatgpt", True)])

        text = generate_summary(BusinessAnalysis.default(), scores, [], "acme.com.au")

        assert text.startswith("acme.com.au has strong AI visibility")
        assert "opportunity" not in text


class TestQueryAllPlatforms:
    def test_every_prompt_on_every_platform(self, policy):
        prompts = [SavedPrompt("p1", "best plumber sydney", "finding_provider"), SavedPrompt("p2", "drains", "service")]
        provider = FakeProvider(
            lambda platform, prompt: "Acme at acme.com.au" if platform == "claude" else "Try Fixit", failing={"gemini"}
        )
        seen = []

        answers = query_all_platforms(
            prompts, "acme.com.au", "run-1", provider, policy, on_progress=lambda d, t: seen.append((d, t))
        )

        assert len(answers) == 8
        assert [a.platform for a in answers[:4]] == ["chatgpt", "claude", "gemini", "perplexity"]
        assert [a.prompt_id for a in answers] == ["p1"] * 4 + ["p2"] * 4
        assert answers[1].domain_mentioned is True
        assert answers[2].error is not None and answers[2].response == ""
        assert seen == [(4, 8), (8, 8)]

    def test_system_prompt_is_sent(self, policy):
        captured = {}

        class Capturing(FakeProvider):
            def complete(self, platform, prompt, *, max_tokens=800, system=None):
                captured["system"] = system
                return super().complete(platform, prompt, max_tokens=max_tokens, system=system)

        query_all_platforms([SavedPrompt("p1", "q", "general")], "acme.com", "run-1", Capturing(), policy, platforms=("chatgpt",))

        assert captured["system"] == SYSTEM_PROMPT

    def test_delay_between_prompts(self):
        delay = 0.3
        slept = []
        policy = PlatformCallPolicy(max_concurrency=1, delay_s=delay, sleep=slept.append)
        prompts = [SavedPrompt(f"p{i}", "q", "general") for i in range(3)]

        query_all_platforms(prompts, "acme.com", "run-1", FakeProvider(), policy, platforms=("chatgpt",))

        assert slept == [delay, delay]
