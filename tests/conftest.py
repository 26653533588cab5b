from __future__ import annotations

import uuid
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from outrank.errors import ProviderError
from outrank.events import EventBus
from outrank.llm.policy import PlatformCallPolicy
from outrank.llm.provider import Completion, LLMProvider
from outrank.repository import ScanRepository
from outrank.schema import DomainSubscriptionRow, Lead, SubscriberCompetitorRow


# -----------------------------
# Fakes
# -----------------------------
class FakeProvider(LLMProvider):
    """
    Scripted LLM provider.

    `handler(platform, prompt)` returns the text to answer with; platforms in
    `failing` raise ProviderError instead.
    """

    def __init__(self, handler: Optional[Callable[[str, str], str]] = None, failing=()) -> None:
        self.handler = handler or (lambda platform, prompt: "")
        self.failing = set(failing)
        self.calls: List[Tuple[str, str]] = []

    def complete(self, platform, prompt, *, max_tokens=800, system=None) -> Completion:
        self.calls.append((platform, prompt))
        if platform in self.failing:
            raise ProviderError(platform, "HTTP 503")
        return Completion(
            text=self.handler(platform, prompt),
            model="openai/gpt-4o",
            input_tokens=100,
            output_tokens=200,
            latency_ms=42,
        )


class FakeResponse:
    def __init__(self, status_code: int, text: str = "") -> None:
        self.status_code = status_code
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class FakeSession:
    """
    url -> html (or an exception instance to raise). Unknown urls are 404s.
    """

    def __init__(self, pages: Dict[str, Union[str, Exception]]) -> None:
        self.pages = pages
        self.requested: List[str] = []

    def get(self, url, headers=None, timeout=None, allow_redirects=True):
        self.requested.append(url)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return FakeResponse(404)
        return FakeResponse(200, page)


class RecordingBus(EventBus):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[str, dict]] = []

    def send(self, name, payload):
        if self.fail:
            raise requests.ConnectionError("prefect api unreachable")
        self.sent.append((name, payload))
        return f"flow-run-{len(self.sent)}"


# -----------------------------
# Fixtures
# -----------------------------
@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield eng
    eng.dispose()


@pytest.fixture()
def repo(engine) -> ScanRepository:
    r = ScanRepository(engine)
    r.ensure_schema()
    return r


@pytest.fixture()
def policy() -> PlatformCallPolicy:
    return PlatformCallPolicy(max_concurrency=1, delay_s=0, sleep=lambda s: None)


@pytest.fixture()
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture()
def make_lead(repo):
    def _make(domain: str = "acme.com.au", tier: str = "free", email: str = "owner@acme.com.au") -> str:
        lead_id = str(uuid.uuid4())
        with repo.session() as s:
            s.add(Lead(id=lead_id, email=email, domain=domain, tier=tier))
        return lead_id

    return _make


@pytest.fixture()
def make_subscription(repo, make_lead):
    def _make(
        domain: str = "acme.com.au",
        *,
        lead_id: Optional[str] = None,
        status: str = "active",
        tier: str = "starter",
        day: Optional[int] = None,
        hour: Optional[int] = None,
        tz: Optional[str] = None,
    ) -> Tuple[str, str]:
        lead_id = lead_id or make_lead(domain=domain, tier=tier)
        sub_id = str(uuid.uuid4())
        with repo.session() as s:
            s.add(
                DomainSubscriptionRow(
                    id=sub_id,
                    lead_id=lead_id,
                    domain=domain,
                    status=status,
                    tier=tier,
                    scan_schedule_day=day,
                    scan_schedule_hour=hour,
                    scan_timezone=tz,
                )
            )
        return sub_id, lead_id

    return _make


@pytest.fixture()
def add_competitor(repo):
    def _add(lead_id: str, name: str, active: bool = True) -> None:
        with repo.session() as s:
            s.add(SubscriberCompetitorRow(lead_id=lead_id, name=name, is_active=active))

    return _add
