import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from rss_digest.models.content import CollectionWindow, FeedSource, NarrativeItem, PendingStory
from rss_digest.services.cache_service import SeenSet
from rss_digest.services.content_extraction import HydrationScheduler, HydrationStats
from rss_digest.services.rss import ContentFilter, IngestionResult, RSSService
from rss_digest.services.summarization_service import SummarizationService
from rss_digest.utils.logging_config import PerformanceTracker, log_pipeline_metrics


def restore_ingestion_order(items: Sequence[NarrativeItem]) -> List[NarrativeItem]:
    """Sort narrative items back into ingestion position order."""
    return sorted(items, key=lambda item: item.position)


def source_diversity_flags(
    items: Sequence[NarrativeItem],
    content_filter: ContentFilter,
    min_distinct_feeds: int,
) -> List[str]:
    """QA flags for thin source coverage and marketing-heavy narratives."""
    flags: List[str] = []
    if not items:
        return flags
    distinct = {item.feed for item in items}
    if len(distinct) < min_distinct_feeds:
        flags.append(f"Only {len(distinct)} distinct feeds contributed stories (minimum {min_distinct_feeds}).")
    marketing = sum(1 for item in items if content_filter.is_marketing_host(item.url))
    ratio = content_filter.settings.max_marketing_ratio
    if marketing / len(items) > ratio:
        flags.append(f"More than {ratio:.0%} of stories come from marketing-oriented hosts.")
    return flags


@dataclass
class AggregationResult:
    narrative: List[NarrativeItem] = field(default_factory=list)
    hydration: Optional[HydrationStats] = None
    qa_flags: List[str] = field(default_factory=list)


class ContentAggregator:
    """
    Runs ingestion, hydration and summarization in order.

    Ingestion is exposed separately so the caller can decide whether enough
    fresh stories exist before any article page or model is touched.
    """

    def __init__(
        self,
        rss_service: RSSService,
        hydrator: HydrationScheduler,
        summarizer: SummarizationService,
        min_distinct_feeds: int = 6,
    ) -> None:
        self.rss_service = rss_service
        self.hydrator = hydrator
        self.summarizer = summarizer
        self.min_distinct_feeds = min_distinct_feeds
        self.logger = logging.getLogger(__name__)

    async def collect(
        self,
        feeds: Sequence[FeedSource],
        seen: SeenSet,
        window: CollectionWindow,
        max_per_feed: int,
        force: bool = False,
    ) -> IngestionResult:
        with PerformanceTracker("ingestion", self.logger) as tracker:
            result = await self.rss_service.ingest(feeds, seen, window, max_per_feed, force=force)
        log_pipeline_metrics(
            self.logger, "ingestion", len(feeds), len(result.stories), tracker.duration_ms,
            dead_feeds=len(result.dead_feeds), candidates=result.total_candidates,
        )
        return result

    async def enrich(self, stories: Sequence[PendingStory], seen: SeenSet) -> AggregationResult:
        """Hydrate and summarize; the narrative comes back in ingestion order."""
        with PerformanceTracker("hydration", self.logger) as tracker:
            stats = await self.hydrator.hydrate(stories)
        log_pipeline_metrics(self.logger, "hydration", len(stories), stats.replaced, tracker.duration_ms,
                             page_fetches=stats.fetched, failed=stats.failed)

        with PerformanceTracker("summarization", self.logger) as tracker:
            completed = await self.summarizer.summarize_all(stories, seen)
        log_pipeline_metrics(self.logger, "summarization", len(stories), len(completed), tracker.duration_ms)

        narrative = restore_ingestion_order(completed)
        flags = source_diversity_flags(narrative, self.rss_service.content_filter, self.min_distinct_feeds)
        for flag in flags:
            self.logger.warning(f"QA flag: {flag}")
        return AggregationResult(narrative=narrative, hydration=stats, qa_flags=flags)
