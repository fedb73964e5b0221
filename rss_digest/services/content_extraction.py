"""
Article hydration.

Stories whose embedded feed content is too short get their article page
fetched under two admission limits at once: a global in-flight cap and a
per-host in-flight cap. Failures keep the embedded text.
"""

import asyncio
import logging
import re
import ssl
import warnings
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence
from urllib.parse import urlparse

import aiohttp
import certifi
from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from rss_digest.models.content import PendingStory
from rss_digest.utils.error_monitoring import ErrorHandler, HydrationFailure


USER_AGENT = "rss-digest/0.1 (+https://github.com/)"

ARTICLE_SELECTORS = [
    'article',
    '[role="main"]',
    '.article-body',
    '.story-body',
    '.entry-content',
    '.post-content',
    'main',
]

_WHITESPACE = re.compile(r"\s+")


def normalise_content(html: str) -> str:
    """Strip markup, images and scripts; collapse whitespace."""
    if not html:
        return ""
    if "<" not in html:
        return _WHITESPACE.sub(" ", html).strip()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "img", "noscript"]):
        tag.decompose()
    return _WHITESPACE.sub(" ", soup.get_text(separator=" ")).strip()


def extract_article_text(html: str) -> str:
    """Main article text from a full page, falling back to the body."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "img", "noscript", "nav", "header", "footer", "aside"]):
        tag.decompose()

    for selector in ARTICLE_SELECTORS:
        element = soup.select_one(selector)
        if element:
            text = _WHITESPACE.sub(" ", element.get_text(separator=" ")).strip()
            if text:
                return text

    body = soup.find("body") or soup
    return _WHITESPACE.sub(" ", body.get_text(separator=" ")).strip()


def host_key(url: str) -> str:
    """Admission key for the per-host limit."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or "unknown"


class PageFetcher(Protocol):
    async def fetch_text(self, url: str) -> Optional[str]:
        ...


class ArticlePageFetcher:
    """
    GET an article page with a timeout.

    Non-200 responses and non-HTML content types mean "no content" (None).
    Timeouts and network errors raise HydrationFailure.
    """

    def __init__(self, timeout_s: float = 10.0, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None
        self.logger = logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=ssl_context),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def fetch_text(self, url: str) -> Optional[str]:
        session = await self._get_session()
        try:
            async with session.get(url, timeout=self.timeout) as response:
                if response.status != 200:
                    self.logger.debug(f"Page fetch {url}: HTTP {response.status}")
                    return None
                content_type = response.headers.get("Content-Type", "")
                if "text/html" not in content_type:
                    self.logger.debug(f"Page fetch {url}: unsupported content-type {content_type!r}")
                    return None
                html = await response.text(errors="replace")
        except asyncio.TimeoutError as e:
            raise HydrationFailure(f"{url}: timed out after {self.timeout.total}s") from e
        except aiohttp.ClientError as e:
            raise HydrationFailure(f"{url}: {e}") from e

        text = extract_article_text(html)
        return text or None


@dataclass
class HydrationStats:
    attempted: int = 0
    fetched: int = 0
    replaced: int = 0
    failed: int = 0
    peak_global: int = 0
    peak_per_host: Dict[str, int] = field(default_factory=dict)


class HydrationScheduler:
    """
    Dual admission control over article fetches.

    A story is dispatched only while the global in-flight count is below
    ``global_limit`` and its host's in-flight count is below
    ``per_host_limit``. Each completion releases both counters and triggers
    another dispatch pass. Every story is attempted exactly once.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        min_chars: int,
        global_limit: int = 6,
        per_host_limit: int = 1,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self.fetcher = fetcher
        self.min_chars = min_chars
        self.global_limit = max(1, global_limit)
        self.per_host_limit = max(1, min(per_host_limit, self.global_limit))
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)
        self.stats = HydrationStats()

    async def resolve_text(self, story: PendingStory) -> str:
        """Embedded text if long enough, else the fetched page text, else the embedded text."""
        cleaned = normalise_content(story.item.raw_content)
        if len(cleaned) >= self.min_chars or not story.item.url:
            return cleaned
        self.stats.fetched += 1
        try:
            article = await self.fetcher.fetch_text(story.item.url)
        except HydrationFailure as e:
            self.stats.failed += 1
            self.error_handler.handle_error(e, "hydration", "fetch_page", {"url": story.item.url})
            return cleaned
        except Exception as e:  # noqa: BLE001
            self.stats.failed += 1
            self.error_handler.handle_error(
                HydrationFailure(f"{story.item.url}: {type(e).__name__}: {e}"),
                "hydration", "fetch_page", {"url": story.item.url},
            )
            return cleaned
        if article:
            self.stats.replaced += 1
            return article
        return cleaned

    async def hydrate(self, stories: Sequence[PendingStory]) -> HydrationStats:
        self.stats = HydrationStats()
        if not stories:
            return self.stats

        queue: List[PendingStory] = list(stories)
        active_global = 0
        active_by_host: Dict[str, int] = defaultdict(int)
        in_flight: Dict[asyncio.Task, str] = {}

        def next_eligible() -> int:
            if active_global >= self.global_limit:
                return -1
            for index, story in enumerate(queue):
                if active_by_host[host_key(story.item.url)] < self.per_host_limit:
                    return index
            return -1

        async def run(story: PendingStory) -> None:
            story.hydrated_text = await self.resolve_text(story)

        while queue or in_flight:
            while True:
                index = next_eligible()
                if index < 0:
                    break
                story = queue.pop(index)
                host = host_key(story.item.url)
                active_by_host[host] += 1
                active_global += 1
                self.stats.attempted += 1
                self.stats.peak_global = max(self.stats.peak_global, active_global)
                self.stats.peak_per_host[host] = max(self.stats.peak_per_host.get(host, 0), active_by_host[host])
                in_flight[asyncio.create_task(run(story))] = host

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                host = in_flight.pop(task)
                active_by_host[host] -= 1
                active_global -= 1
                if task.exception() is not None:
                    # resolve_text absorbs fetch errors; anything else still must not stop the stage
                    self.error_handler.handle_error(task.exception(), "hydration", "hydrate_story", {"host": host})

        for story in stories:
            if story.hydrated_text is None:
                story.hydrated_text = normalise_content(story.item.raw_content)

        self.logger.info(
            f"Hydration: {self.stats.attempted} stories, {self.stats.fetched} page fetches, "
            f"{self.stats.replaced} replaced, {self.stats.failed} failed "
            f"(peak {self.stats.peak_global}/{self.global_limit} global)"
        )
        return self.stats
