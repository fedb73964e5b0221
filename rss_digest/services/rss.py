import asyncio
import hashlib
import logging
import re
import ssl
from dataclasses import dataclass, field
from datetime import date as date_cls
from datetime import datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Sequence
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import aiohttp
import certifi
import feedparser
from dateutil import parser as dateutil_parser

from rss_digest.models.content import CandidateItem, CollectionWindow, FeedSource, PendingStory
from rss_digest.services.cache_service import SeenSet
from rss_digest.utils.config_loader import FilterSettings
from rss_digest.utils.error_monitoring import ErrorHandler, FeedUnavailable


USER_AGENT = "rss-digest/0.1 (+https://github.com/)"


class RSSServiceError(Exception):
    pass


def fingerprint_url(url: str) -> str:
    """SHA-1 hex digest of the URL; equal URLs always give equal fingerprints."""
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


def parse_published_at(value: Optional[str]) -> Optional[datetime]:
    """Parse a feed timestamp into an aware UTC datetime, or None when unparsable."""
    if not value:
        return None
    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, OverflowError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_collection_window(edition_date: str, hour: int, minute: int, tz_name: str) -> CollectionWindow:
    """
    24-hour window ending at the digest cutoff on ``edition_date``.

    The end is the cutoff wall-clock time in the configured timezone; the
    start is exactly 24 elapsed hours earlier, so DST changes do not stretch
    or shrink the window.
    """
    day = date_cls.fromisoformat(edition_date)
    local_end = datetime.combine(day, time(hour, minute), tzinfo=ZoneInfo(tz_name))
    end = local_end.astimezone(timezone.utc)
    return CollectionWindow(start=end - timedelta(hours=24), end=end)


def _sort_key(item: CandidateItem):
    # Undated items sort ahead of every dated one so the early break never drops them
    if item.published_at is None:
        return (1, 0.0)
    return (0, item.published_at.timestamp())


def pick_fresh_items(
    items: Sequence[CandidateItem],
    seen: SeenSet,
    window: CollectionWindow,
    max_items: int,
    ignore_seen: bool = False,
) -> List[CandidateItem]:
    """
    Select in-window items from one feed, newest first.

    Items are sorted by publish time descending and walked once: items at or
    after ``window.end`` are skipped, the walk stops at the first item older
    than ``window.start``, and at most ``max_items`` are kept. Items without a
    parsable timestamp are always considered fresh.
    """
    fresh: List[CandidateItem] = []
    if max_items <= 0:
        return fresh
    for item in sorted(items, key=_sort_key, reverse=True):
        if not item.url:
            continue
        if item.published_at is not None:
            if item.published_at >= window.end:
                continue
            if item.published_at < window.start:
                break
        if not ignore_seen and fingerprint_url(item.url) in seen:
            continue
        fresh.append(item)
        if len(fresh) >= max_items:
            break
    return fresh


def normalise_host(url: str) -> Optional[str]:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def _host_matches(host: Optional[str], candidates: Sequence[str]) -> bool:
    if not host:
        return False
    return any(host == c or host.endswith(f".{c}") for c in candidates)


class ContentFilter:
    """Host allow-list and marketing detection for candidate items."""

    def __init__(self, settings: FilterSettings) -> None:
        self.settings = settings
        self._keywords = [re.compile(k, re.IGNORECASE) for k in settings.marketing_keywords]

    def is_allowed_host(self, url: str) -> bool:
        if not self.settings.allowed_hosts:
            return True
        return _host_matches(normalise_host(url), self.settings.allowed_hosts)

    def is_marketing_host(self, url: str) -> bool:
        return _host_matches(normalise_host(url), self.settings.marketing_hosts)

    def is_marketing_text(self, text: str) -> bool:
        return any(rx.search(text) for rx in self._keywords)

    def is_marketing(self, item: CandidateItem, feed: FeedSource) -> bool:
        if feed.has_tag(self.settings.marketing_exempt_tag):
            return False
        return self.is_marketing_host(item.url) or self.is_marketing_text(f"{item.title} {item.raw_content}")


def parse_feed_document(body: bytes) -> List[CandidateItem]:
    """Map a parsed RSS/Atom document to candidate items, in document order."""
    parsed = feedparser.parse(body)
    if getattr(parsed, "bozo", False) and not parsed.entries:
        raise RSSServiceError(f"unparsable feed document: {getattr(parsed, 'bozo_exception', 'unknown error')}")

    items: List[CandidateItem] = []
    for entry in parsed.entries:
        title = (entry.get("title") or "").strip() or "Untitled"
        url = (entry.get("link") or entry.get("id") or "").strip()
        published_raw = entry.get("published") or entry.get("updated") or entry.get("created")
        content = ""
        if entry.get("content"):
            content = entry["content"][0].get("value", "") or ""
        content = content or entry.get("summary") or entry.get("description") or ""
        items.append(CandidateItem(
            title=title,
            url=url,
            published_at=parse_published_at(published_raw),
            raw_content=content,
            published_raw=published_raw,
        ))
    return items


class FeedFetcher(Protocol):
    async def fetch_items(self, source: FeedSource) -> List[CandidateItem]:
        ...


class AiohttpFeedFetcher:
    """Fetches feed documents over HTTP with a per-request timeout."""

    def __init__(self, timeout_s: float = 20.0, session: Optional[aiohttp.ClientSession] = None) -> None:
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

    async def fetch_items(self, source: FeedSource) -> List[CandidateItem]:
        session = await self._get_session()
        try:
            async with session.get(source.endpoint, timeout=self.timeout) as response:
                if response.status != 200:
                    raise FeedUnavailable(source.name, f"HTTP {response.status}")
                body = await response.read()
        except asyncio.TimeoutError as e:
            raise FeedUnavailable(source.name, f"timed out after {self.timeout.total}s") from e
        except aiohttp.ClientError as e:
            raise FeedUnavailable(source.name, f"network error: {e}") from e

        try:
            return parse_feed_document(body)
        except RSSServiceError as e:
            raise FeedUnavailable(source.name, str(e)) from e


@dataclass
class IngestionResult:
    stories: List[PendingStory] = field(default_factory=list)
    dead_feeds: List[str] = field(default_factory=list)
    items_per_feed: Dict[str, int] = field(default_factory=dict)
    total_candidates: int = 0
    host_filtered: int = 0
    marketing_filtered: int = 0
    cross_feed_duplicates: int = 0
    qa_flags: List[str] = field(default_factory=list)


class RSSService:
    """
    Concurrent feed ingestion with freshness and dedup filtering.

    Feeds are fetched under a bounded semaphore; stories are assembled in
    configuration order once every fetch has settled.
    """

    def __init__(
        self,
        fetcher: FeedFetcher,
        content_filter: ContentFilter,
        max_concurrent_feeds: int = 6,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self.fetcher = fetcher
        self.content_filter = content_filter
        self.max_concurrent_feeds = max(1, max_concurrent_feeds)
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    async def ingest(
        self,
        feeds: Sequence[FeedSource],
        seen: SeenSet,
        window: CollectionWindow,
        max_per_feed: int,
        force: bool = False,
    ) -> IngestionResult:
        semaphore = asyncio.Semaphore(self.max_concurrent_feeds)
        fetched: List[Optional[List[CandidateItem]]] = [None] * len(feeds)

        async def fetch_one(index: int, source: FeedSource) -> None:
            async with semaphore:
                try:
                    items = await self.fetcher.fetch_items(source)
                except FeedUnavailable as e:
                    self.error_handler.handle_error(e, "rss", "fetch_feed", {"feed": source.name})
                    return
                except Exception as e:  # noqa: BLE001
                    wrapped = FeedUnavailable(source.name, f"{type(e).__name__}: {e}")
                    self.error_handler.handle_error(wrapped, "rss", "fetch_feed", {"feed": source.name})
                    return
                fetched[index] = pick_fresh_items(items, seen, window, max_per_feed, ignore_seen=force)

        self.logger.info(
            f"Fetching {len(feeds)} feeds (concurrency {self.max_concurrent_feeds}) "
            f"for window {window.start.isoformat()} → {window.end.isoformat()}"
        )
        await asyncio.gather(*(fetch_one(i, f) for i, f in enumerate(feeds)))

        result = IngestionResult()
        fingerprints_this_run = set()
        for source, fresh in zip(feeds, fetched):
            if fresh is None:
                result.dead_feeds.append(source.name)
                self.logger.warning(f"⚠️ Feed appears dead: \"{source.name}\"")
                continue
            kept = 0
            for item in fresh:
                result.total_candidates += 1
                if not self.content_filter.is_allowed_host(item.url):
                    result.host_filtered += 1
                    continue
                if self.content_filter.is_marketing(item, source):
                    result.marketing_filtered += 1
                    continue
                fp = fingerprint_url(item.url)
                if fp in fingerprints_this_run:
                    result.cross_feed_duplicates += 1
                    continue
                fingerprints_this_run.add(fp)
                result.stories.append(PendingStory(source=source, item=item, position=len(result.stories)))
                kept += 1
            result.items_per_feed[source.name] = kept

        ratio = self.content_filter.settings.max_marketing_ratio
        if result.total_candidates and result.marketing_filtered / result.total_candidates > ratio:
            result.qa_flags.append(
                f"More than {ratio:.0%} of fetched articles were filtered as marketing-oriented."
            )

        if result.host_filtered:
            self.logger.info(f"Skipped {result.host_filtered} articles from hosts outside the allow-list")
        if result.marketing_filtered:
            self.logger.info(f"Filtered {result.marketing_filtered} marketing-style articles")
        if result.cross_feed_duplicates:
            self.logger.info(f"Dropped {result.cross_feed_duplicates} articles already collected from an earlier feed")
        self.logger.info(
            f"Fetched {len(feeds)} feeds - {len(result.stories)} new stories, {len(result.dead_feeds)} dead feeds"
        )
        return result
