#!/usr/bin/env python3
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from rss_digest.deployment.validator import ConfigReadinessValidator, print_report
from rss_digest.pipeline.content_aggregator import ContentAggregator
from rss_digest.pipeline.edition_compiler import CompilationError, EditionCompiler
from rss_digest.pipeline.quality_validator import QualityValidator
from rss_digest.services.ai_service import (
    AIServiceError,
    TextGenerationService,
    create_generation_service,
    load_prompts,
)
from rss_digest.services.cache_service import CacheServiceError, SeenSetCache
from rss_digest.services.content_extraction import ArticlePageFetcher, HydrationScheduler, PageFetcher
from rss_digest.services.rss import (
    AiohttpFeedFetcher,
    ContentFilter,
    FeedFetcher,
    RSSService,
    resolve_collection_window,
)
from rss_digest.services.summarization_service import SummarizationService
from rss_digest.services.synthesis_service import FallbackSynthesizer, SynthesisService
from rss_digest.services.theme_extraction import SourceDiversityThemeScorer
from rss_digest.utils.config_loader import DigestConfig, load_config
from rss_digest.utils.error_monitoring import ConfigurationError, ErrorHandler, InsufficientContent
from rss_digest.utils.logging_config import PerformanceTracker, bind_edition_date, setup_logging
from rss_digest.utils.metrics import SummaryMetrics


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INSUFFICIENT_CONTENT = 2


@dataclass
class PipelineMetrics:
    """Stage timings and counts for one edition run."""
    start_time: datetime
    end_time: Optional[datetime] = None

    # Stage timings (ms)
    ingest_time: float = 0.0
    enrich_time: float = 0.0
    synthesis_time: float = 0.0
    compile_time: float = 0.0

    # Counts
    feeds_total: int = 0
    feeds_dead: int = 0
    stories: int = 0
    summaries: int = 0
    summary_fallbacks: int = 0
    synthesis_attempts: int = 0

    forced: bool = False
    synthesis_provenance: Optional[str] = None
    reissued_from: Optional[str] = None
    qa_warnings: List[str] = field(default_factory=list)

    def total_time(self) -> float:
        """Wall-clock seconds from start to end; 0 while running."""
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0


class EditionPipeline:
    """
    Produces one edition per requested date.

    Ingestion -> hydration -> summarization -> ordering -> synthesis ->
    edition. The run either writes a complete edition (or re-issues a
    recent one) or raises; the seen-set and metrics files are written only
    after the edition is on disk.
    """

    def __init__(
        self,
        config: DigestConfig,
        feed_fetcher: Optional[FeedFetcher] = None,
        page_fetcher: Optional[PageFetcher] = None,
        generator: Optional[TextGenerationService] = None,
        prompts: Optional[Dict[str, Any]] = None,
        error_handler: Optional[ErrorHandler] = None,
        summary_base_delay: float = 0.5,
    ) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.error_handler = error_handler or ErrorHandler()
        self.prompts = prompts or load_prompts()
        temperatures = (self.prompts.get("parameters") or {}).get("temperatures")

        conc = config.concurrency
        self.feed_fetcher = feed_fetcher or AiohttpFeedFetcher(timeout_s=conc.feed_timeout_s)
        self.page_fetcher = page_fetcher or ArticlePageFetcher(timeout_s=conc.page_timeout_s)
        self.generator = generator or create_generation_service(config.generation)
        if temperatures and generator is None:
            self.generator.temperatures = dict(temperatures)

        self.content_filter = ContentFilter(config.filters)
        self.compiler = EditionCompiler(config.paths.editions_dir)
        self.validator = QualityValidator(config.quality)
        self.summary_base_delay = summary_base_delay
        self.metrics: Optional[PipelineMetrics] = None

    def _build_aggregator(self, summary_metrics: SummaryMetrics) -> ContentAggregator:
        conc = self.config.concurrency
        rss = RSSService(self.feed_fetcher, self.content_filter, conc.feeds, self.error_handler)
        hydrator = HydrationScheduler(
            self.page_fetcher,
            min_chars=self.config.digest.min_chars_per_summary,
            global_limit=conc.hydrate,
            per_host_limit=conc.hydrate_per_host,
            error_handler=self.error_handler,
        )
        summarizer = SummarizationService(
            self.generator,
            self.prompts,
            summary_metrics,
            language=self.config.language,
            max_attempts=conc.summary_retries,
            max_chars=self.config.digest.max_chars_per_summary,
            concurrency=conc.summaries,
            base_delay=self.summary_base_delay,
            error_handler=self.error_handler,
        )
        return ContentAggregator(rss, hydrator, summarizer, self.config.filters.min_distinct_feeds)

    def _build_synthesizer(self) -> SynthesisService:
        return SynthesisService(
            self.generator,
            self.prompts,
            self.validator,
            language=self.config.language,
            timezone=self.config.timezone,
            max_attempts=self.config.generation.briefing_attempts,
            reading_wpm=self.config.concurrency.reading_wpm,
            reading_range=(self.config.digest.reading_minutes_min, self.config.digest.reading_minutes_max),
            fallback=FallbackSynthesizer(SourceDiversityThemeScorer()),
            error_handler=self.error_handler,
        )

    async def _warmup(self) -> None:
        try:
            await self.generator.warmup()
        except (AIServiceError, asyncio.TimeoutError) as e:
            self.logger.warning(f"⚠️ Text generation warmup failed, continuing: {e}")

    def _reissue_or_abort(self, edition_date: str, found: int, summary_metrics: SummaryMetrics) -> Path:
        digest = self.config.digest
        self.logger.warning(
            f"Only {found} fresh stories (minimum {digest.min_valid_articles}); "
            f"looking back {digest.fallback_lookback_days} days for a previous edition"
        )
        previous = self.compiler.find_fallback_edition(edition_date, digest.fallback_lookback_days)
        if previous is None:
            raise InsufficientContent(edition_date, found, digest.min_valid_articles, digest.fallback_lookback_days)
        path = self.compiler.reissue(previous, edition_date)
        self.metrics.reissued_from = previous.stem
        summary_metrics.flush(self.config.paths.metrics_path, edition_date, self.generator.model)
        return path

    async def run(self, edition_date: str, force: bool = False) -> Path:
        """
        Generate the edition for ``edition_date`` (YYYY-MM-DD).

        Raises:
            InsufficientContent: too few fresh stories and no recent edition to re-issue
            CacheServiceError: the seen-set file is unreadable
            CompilationError: the edition could not be rendered or written
        """
        self.metrics = PipelineMetrics(start_time=datetime.now(timezone.utc))
        try:
            return await self._execute(edition_date, force)
        finally:
            self.metrics.end_time = datetime.now(timezone.utc)
            self.error_handler.log_summary()

    async def _execute(self, edition_date: str, force: bool) -> Path:
        cfg = self.config
        window = resolve_collection_window(edition_date, cfg.digest.hour, cfg.digest.minute, cfg.timezone)
        forced = force or self.compiler.edition_path(edition_date).exists()
        self.metrics.forced = forced
        if forced:
            self.logger.info(f"Regenerating edition {edition_date}: seen-set ignored for freshness")

        seen_cache = SeenSetCache(cfg.paths.seen_path)
        seen = seen_cache.load()
        summary_metrics = SummaryMetrics()
        aggregator = self._build_aggregator(summary_metrics)

        with PerformanceTracker("ingest", self.logger) as tracker:
            ingestion = await aggregator.collect(cfg.feeds, seen, window, cfg.digest.max_articles_per_feed, force=forced)
        self.metrics.ingest_time = tracker.duration_ms
        self.metrics.feeds_total = len(cfg.feeds)
        self.metrics.feeds_dead = len(ingestion.dead_feeds)
        self.metrics.stories = len(ingestion.stories)

        if len(ingestion.stories) < cfg.digest.min_valid_articles:
            return self._reissue_or_abort(edition_date, len(ingestion.stories), summary_metrics)

        await self._warmup()

        with PerformanceTracker("enrich", self.logger) as tracker:
            aggregation = await aggregator.enrich(ingestion.stories, seen)
        self.metrics.enrich_time = tracker.duration_ms
        self.metrics.summaries = len(aggregation.narrative)
        self.metrics.summary_fallbacks = (
            summary_metrics.get("refusal_fallback") + summary_metrics.get("exhausted_fallback")
        )

        with PerformanceTracker("synthesis", self.logger) as tracker:
            outcome = await self._build_synthesizer().synthesize(aggregation.narrative)
        self.metrics.synthesis_time = tracker.duration_ms
        self.metrics.synthesis_attempts = outcome.attempts
        self.metrics.synthesis_provenance = outcome.provenance.value

        with PerformanceTracker("compile", self.logger) as tracker:
            edition = self.compiler.compile(
                edition_date,
                cfg.timezone,
                outcome,
                aggregation.narrative,
                qa_flags=ingestion.qa_flags + aggregation.qa_flags,
            )
            path = self.compiler.write(edition)
        self.metrics.compile_time = tracker.duration_ms
        self.metrics.qa_warnings = list(edition.qa_warnings)

        seen_cache.save(seen)
        summary_metrics.flush(cfg.paths.metrics_path, edition_date, self.generator.model)
        return path

    async def close(self) -> None:
        for resource in (self.feed_fetcher, self.page_fetcher, self.generator):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


def parse_edition_date(value: str) -> str:
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}; expected YYYY-MM-DD") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rss-digest", description="Generate the daily digest edition")
    parser.add_argument("date", nargs="?", type=parse_edition_date,
                        help="Edition date (YYYY-MM-DD); defaults to today in the configured timezone")
    parser.add_argument("--config", default="config.yml", help="Path to config.yml")
    parser.add_argument("--feeds", default="feeds.yml", help="Path to feeds.yml")
    parser.add_argument("--force", action="store_true", help="Regenerate even if items were already seen")
    parser.add_argument("--validate-config", action="store_true", help="Run the readiness report and exit")
    parser.add_argument("--check-connectivity", action="store_true",
                        help="With --validate-config, also probe the text-generation backend")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-dir", default=None, help="Directory for log files (default: ./logs)")
    parser.add_argument("--no-file-logs", action="store_true", help="Log to the console only")
    parser.add_argument("--structured-logs", action="store_true", help="Emit JSON log lines")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return the process exit code."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(
        log_level=args.log_level,
        log_dir=args.log_dir,
        enable_file_logging=not args.no_file_logs,
        enable_structured_logging=args.structured_logs,
    )
    logger = logging.getLogger(__name__)

    if args.validate_config:
        validator = ConfigReadinessValidator(args.config, args.feeds, check_connectivity=args.check_connectivity)
        report = await validator.validate_all()
        print_report(report)
        return EXIT_OK if report.ready else EXIT_FAILURE

    try:
        config = load_config(args.config, args.feeds)
    except ConfigurationError as e:
        logger.error(str(e))
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_FAILURE

    edition_date = args.date or datetime.now(ZoneInfo(config.timezone)).date().isoformat()
    bind_edition_date(edition_date)
    pipeline = EditionPipeline(config)
    try:
        path = await pipeline.run(edition_date, force=args.force)
    except InsufficientContent as e:
        logger.error(str(e))
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_INSUFFICIENT_CONTENT
    except (CacheServiceError, CompilationError, OSError) as e:
        logger.error(f"Edition {edition_date} failed: {e}", exc_info=True)
        print(f"❌ Edition {edition_date} failed: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        await pipeline.close()

    metrics = pipeline.metrics
    print(f"✅ Edition written to {path}")
    if metrics:
        print(f"Total time: {metrics.total_time():.2f}s")
        print(f"Stories: {metrics.stories} from {metrics.feeds_total - metrics.feeds_dead}/{metrics.feeds_total} feeds")
    return EXIT_OK


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n⚠️ Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    cli()
