"""Shared fakes for pipeline tests. Nothing here touches the network."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

from rss_digest.models.content import (
    CandidateItem,
    FeedSource,
    NarrativeItem,
    Provenance,
    SummaryResult,
)
from rss_digest.services.ai_service import TextGenerationBackend, TextGenerationService
from rss_digest.services.content_extraction import host_key
from rss_digest.utils.config_loader import (
    DigestConfig,
    PathSettings,
    QualityThresholds,
    SectionThreshold,
)
from rss_digest.utils.error_monitoring import HydrationFailure


SUMMARY_OK = "ABSTRACT: A concise abstract of the story.\n- First point\n- Second point\n- Third point"

Scripted = Union[str, Exception, Callable[[str], str]]


class FakeFeedFetcher:
    """Returns canned items per feed name; exceptions are raised as-is."""

    def __init__(self, items_by_feed: Dict[str, Union[List[CandidateItem], Exception]], delays: Optional[Dict[str, float]] = None):
        self.items_by_feed = items_by_feed
        self.delays = delays or {}
        self.calls: List[str] = []

    async def fetch_items(self, source: FeedSource) -> List[CandidateItem]:
        self.calls.append(source.name)
        await asyncio.sleep(self.delays.get(source.name, 0))
        result = self.items_by_feed.get(source.name, [])
        if isinstance(result, Exception):
            raise result
        return list(result)


class FakePageFetcher:
    """Page texts by URL, with optional failures; records concurrency peaks."""

    def __init__(self, pages: Optional[Dict[str, Optional[str]]] = None, fail: Sequence[str] = (), delay: float = 0.01):
        self.pages = pages or {}
        self.fail = set(fail)
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.active_by_host: Dict[str, int] = defaultdict(int)
        self.peak = 0
        self.peak_by_host: Dict[str, int] = defaultdict(int)

    async def fetch_text(self, url: str) -> Optional[str]:
        host = host_key(url)
        self.calls.append(url)
        self.active += 1
        self.active_by_host[host] += 1
        self.peak = max(self.peak, self.active)
        self.peak_by_host[host] = max(self.peak_by_host[host], self.active_by_host[host])
        try:
            await asyncio.sleep(self.delay)
            if url in self.fail:
                raise HydrationFailure(f"{url}: connection reset")
            return self.pages.get(url)
        finally:
            self.active -= 1
            self.active_by_host[host] -= 1


class ScriptedBackend(TextGenerationBackend):
    """Replies from a script per purpose; a callable receives the prompt."""

    def __init__(self, summary: Optional[List[Scripted]] = None, briefing: Optional[List[Scripted]] = None,
                 default_summary: Scripted = SUMMARY_OK, default_briefing: Scripted = ""):
        self.model = "fake/model"
        self.summary = list(summary or [])
        self.briefing = list(briefing or [])
        self.default_summary = default_summary
        self.default_briefing = default_briefing
        self.prompts: List[str] = []
        self.warmups = 0

    async def warmup(self) -> None:
        self.warmups += 1

    async def complete(self, prompt: str, temperature: float) -> str:
        self.prompts.append(prompt)
        is_briefing = "RETURN STRICTLY AS JSON" in prompt
        queue = self.briefing if is_briefing else self.summary
        step = queue.pop(0) if queue else (self.default_briefing if is_briefing else self.default_summary)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(prompt)
        return step


def make_generator(backend: Optional[TextGenerationBackend] = None, timeout_s: float = 5.0) -> TextGenerationService:
    return TextGenerationService(backend or ScriptedBackend(), timeout_s=timeout_s)


def make_item(title: str, url: str, published_at: Optional[datetime] = None, content: str = "") -> CandidateItem:
    return CandidateItem(title=title, url=url, published_at=published_at, raw_content=content)


def make_narrative(feed: str, index: int, published: str = "2026-10-17T10:00:00+00:00") -> NarrativeItem:
    return NarrativeItem(
        feed=feed,
        title=f"Story {index} from {feed}",
        url=f"https://{feed.lower().replace(' ', '')}.example.com/story-{index}",
        published_at=published,
        summary=SummaryResult(
            abstract=f"Regional officials approved measure {index} after a long debate.",
            bullets=[
                f"Measure {index} takes effect next month.",
                f"Budget impact estimated at {index} million.",
                "Opposition plans an appeal.",
            ],
            provenance=Provenance.SUCCESS,
            engine="fake/model",
        ),
        position=index,
    )


def small_quality() -> QualityThresholds:
    """Thresholds a short test draft can satisfy."""
    sections = {
        name: SectionThreshold(min_words=5, max_words=400, min_paragraphs=1)
        for name in ("synthesis", "analysis", "key_points", "watch_points", "curiosities", "positives")
    }
    return QualityThresholds(sections=sections, min_cited_sources=1)


@pytest.fixture
def window_times():
    """Collection window for 2026-10-18 at 06:00 UTC."""
    end = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)
    return end - timedelta(hours=24), end


@pytest.fixture
def make_config(tmp_path: Path):
    def factory(feeds: Sequence[FeedSource], **digest_overrides) -> DigestConfig:
        config = DigestConfig(
            timezone="UTC",
            feeds=list(feeds),
            quality=small_quality(),
            paths=PathSettings(editions_dir=tmp_path / "editions", cache_dir=tmp_path / "cache"),
        )
        config.generation.briefing_attempts = 2
        config.concurrency.summary_retries = 3
        config.filters.min_distinct_feeds = 1
        for key, value in digest_overrides.items():
            setattr(config.digest, key, value)
        return config

    return factory



def briefing_json(**overrides) -> str:
    """A briefing reply that passes ``small_quality`` thresholds, wrapped in chatter."""
    body = {
        "synthesis": "Officials approved the regional budget on Monday [↗ Alpha](https://alpha.example.com/story-0).",
        "analysis": "Markets reacted calmly while analysts questioned long-term funding [↗ Beta](https://beta.example.com/story-1).",
        "key_points": "Budget passed with a narrow majority [↗ Alpha](https://alpha.example.com/story-0).",
        "watch_points": "Appeal hearing expected next month in court [↗ Gamma](https://gamma.example.com/story-2).",
        "curiosities": "Nobody explained why the vote happened overnight [↗ Beta](https://beta.example.com/story-1).",
        "positives": "Schools receive additional funding from the plan [↗ Gamma](https://gamma.example.com/story-2).",
        "timeline": [{"title": "Budget vote", "summary": "Passed", "date": "2026-10-17", "source": "Alpha",
                      "url": "https://alpha.example.com/story-0"}],
    }
    body.update(overrides)
    return "Here is the briefing:\n" + json.dumps(body, ensure_ascii=False) + "\nThanks."
