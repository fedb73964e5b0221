"""
Operator configuration: ``config.yml`` (settings) and ``feeds.yml`` (sources).

Both files are YAML. Environment variables override concurrency and
generation settings; numeric overrides are clamped to safe ranges.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from rss_digest.models.content import SECTION_NAMES, FeedSource
from rss_digest.utils.error_monitoring import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_MARKETING_HOSTS = [
    "producthunt.com",
    "github.com",
    "medium.com",
    "substack.com",
    "dev.to",
    "hashnode.com",
]

DEFAULT_MARKETING_KEYWORDS = [
    r"product\s*hunt",
    r"github",
    r"app\s*launch",
    r"beta\s*launch",
    r"product\s*update",
]


@dataclass
class DigestSettings:
    hour: int = 6
    minute: int = 0
    max_articles_per_feed: int = 5
    max_chars_per_summary: int = 600
    min_chars_per_summary: int = 200
    min_valid_articles: int = 5
    fallback_lookback_days: int = 3
    reading_minutes_min: int = 55
    reading_minutes_max: int = 60


@dataclass
class GenerationSettings:
    provider: str = "opencode"
    model: str = "openai/gpt-4.1"
    agent: Optional[str] = None
    timeout_ms: int = 120_000
    briefing_attempts: int = 2
    base_url: str = "http://127.0.0.1:4096"
    gemini_api_key: Optional[str] = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class ConcurrencySettings:
    feeds: int = 6
    hydrate: int = 6
    hydrate_per_host: int = 1
    summaries: int = 3
    summary_retries: int = 3
    reading_wpm: int = 55
    feed_timeout_s: float = 20.0
    page_timeout_s: float = 10.0


@dataclass
class FilterSettings:
    allowed_hosts: List[str] = field(default_factory=list)
    marketing_hosts: List[str] = field(default_factory=lambda: list(DEFAULT_MARKETING_HOSTS))
    marketing_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_MARKETING_KEYWORDS))
    marketing_exempt_tag: str = "tech focus day"
    max_marketing_ratio: float = 0.4
    min_distinct_feeds: int = 6


@dataclass
class SectionThreshold:
    min_words: int
    max_words: int
    min_paragraphs: int


def _default_sections() -> Dict[str, SectionThreshold]:
    return {
        "synthesis": SectionThreshold(1000, 1400, 4),
        "analysis": SectionThreshold(900, 1200, 4),
        "key_points": SectionThreshold(250, 700, 5),
        "watch_points": SectionThreshold(200, 600, 4),
        "curiosities": SectionThreshold(100, 450, 1),
        "positives": SectionThreshold(220, 600, 2),
    }


@dataclass
class QualityThresholds:
    sections: Dict[str, SectionThreshold] = field(default_factory=_default_sections)
    min_citations_per_paragraph: float = 0.6
    min_cited_sources: int = 2
    max_section_overlap: float = 0.40
    duplicate_min_chars: int = 16


@dataclass
class PathSettings:
    editions_dir: Path = Path("content/editions")
    cache_dir: Path = Path("content/cache")

    @property
    def seen_path(self) -> Path:
        return self.cache_dir / "seen.json"

    @property
    def metrics_path(self) -> Path:
        return self.cache_dir / "summary-metrics.json"

    def edition_path(self, date: str) -> Path:
        return self.editions_dir / f"{date}.md"


@dataclass
class DigestConfig:
    timezone: str = "UTC"
    language: str = "English"
    digest: DigestSettings = field(default_factory=DigestSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)
    filters: FilterSettings = field(default_factory=FilterSettings)
    quality: QualityThresholds = field(default_factory=QualityThresholds)
    paths: PathSettings = field(default_factory=PathSettings)
    feeds: List[FeedSource] = field(default_factory=list)


def read_yaml(path: Path, issues: List[str]) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        issues.append(f"{path.name}: file is missing; copy {path.stem}.example.yml and customise it")
        return None
    except yaml.YAMLError as e:
        issues.append(f"{path.name}: failed to parse YAML: {e}")
        return None
    if data is None:
        return {}
    if not isinstance(data, dict):
        issues.append(f"{path.name}: top level must be a mapping")
        return None
    return data


def _int_field(block: Mapping[str, Any], key: str, default: int, lo: int, hi: int,
               path: str, issues: List[str]) -> int:
    value = block.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        issues.append(f"{path}.{key}: must be an integer between {lo} and {hi}")
        return default
    if value < lo or value > hi:
        issues.append(f"{path}.{key}: must be between {lo} and {hi} (got {value})")
        return default
    return value


def _float_field(block: Mapping[str, Any], key: str, default: float, lo: float, hi: float,
                 path: str, issues: List[str]) -> float:
    value = block.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.append(f"{path}.{key}: must be a number between {lo} and {hi}")
        return default
    if value < lo or value > hi:
        issues.append(f"{path}.{key}: must be between {lo} and {hi} (got {value})")
        return default
    return float(value)


def _str_list(block: Mapping[str, Any], key: str, default: List[str], path: str, issues: List[str]) -> List[str]:
    value = block.get(key, default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        issues.append(f"{path}.{key}: must be a list of strings")
        return list(default)
    return [v.strip().lower() if key.endswith("hosts") else v for v in value]


def _mapping(data: Mapping[str, Any], key: str, issues: List[str], required: bool = False) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        if required:
            issues.append(f"{key}: required mapping missing")
        return {}
    if not isinstance(value, dict):
        issues.append(f"{key}: must be a mapping")
        return {}
    return value


def env_int(env: Mapping[str, str], name: str, default: int, lo: int, hi: int) -> int:
    """Integer override from the environment, clamped to ``[lo, hi]``."""
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(float(str(raw).strip()))
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}; using {default}")
        return default
    return max(lo, min(hi, value))


def parse_digest(data: Mapping[str, Any], issues: List[str]) -> DigestSettings:
    block = _mapping(data, "digest", issues, required=True)
    defaults = DigestSettings()
    settings = DigestSettings(
        hour=_int_field(block, "hour", defaults.hour, 0, 23, "digest", issues),
        minute=_int_field(block, "minute", defaults.minute, 0, 59, "digest", issues),
        max_articles_per_feed=_int_field(block, "max_articles_per_feed", defaults.max_articles_per_feed, 1, 20, "digest", issues),
        max_chars_per_summary=_int_field(block, "max_chars_per_summary", defaults.max_chars_per_summary, 120, 1200, "digest", issues),
        min_chars_per_summary=_int_field(block, "min_chars_per_summary", defaults.min_chars_per_summary, 80, 600, "digest", issues),
        min_valid_articles=_int_field(block, "min_valid_articles", defaults.min_valid_articles, 1, 100, "digest", issues),
        fallback_lookback_days=_int_field(block, "fallback_lookback_days", defaults.fallback_lookback_days, 0, 30, "digest", issues),
    )
    reading = block.get("reading_minutes") or {}
    if not isinstance(reading, dict):
        issues.append("digest.reading_minutes: must be a mapping with min and max")
    else:
        settings.reading_minutes_min = _int_field(reading, "min", defaults.reading_minutes_min, 1, 600, "digest.reading_minutes", issues)
        settings.reading_minutes_max = _int_field(reading, "max", defaults.reading_minutes_max, 1, 600, "digest.reading_minutes", issues)
        if settings.reading_minutes_min > settings.reading_minutes_max:
            issues.append("digest.reading_minutes: min must not exceed max")
    if settings.min_chars_per_summary >= settings.max_chars_per_summary:
        issues.append("digest.min_chars_per_summary: must be less than max_chars_per_summary")
    return settings


def parse_generation(data: Mapping[str, Any], issues: List[str], env: Mapping[str, str]) -> GenerationSettings:
    # ``opencode:`` is accepted as the older name of the block
    key = "generation" if "generation" in data else "opencode"
    block = _mapping(data, key, issues)
    defaults = GenerationSettings()

    provider = str(block.get("provider", defaults.provider)).strip().lower()
    if provider not in ("opencode", "gemini"):
        issues.append(f"{key}.provider: must be 'opencode' or 'gemini' (got {provider!r})")
        provider = defaults.provider

    model = block.get("model", defaults.model)
    if not isinstance(model, str) or not model.strip():
        issues.append(f"{key}.model: required string")
        model = defaults.model
    override = env.get("OPENCODE_MODEL") if provider == "opencode" else env.get("GEMINI_MODEL")
    if override and override.strip():
        model = override.strip()

    agent = block.get("agent")
    if agent is not None and not isinstance(agent, str):
        issues.append(f"{key}.agent: must be null or a string")
        agent = None

    settings = GenerationSettings(
        provider=provider,
        model=model.strip(),
        agent=agent or None,
        timeout_ms=_int_field(block, "timeout_ms", defaults.timeout_ms, 1000, 3_600_000, key, issues),
        briefing_attempts=_int_field(block, "briefing_attempts", defaults.briefing_attempts, 1, 5, key, issues),
        base_url=(env.get("OPENCODE_BASE_URL") or block.get("base_url") or defaults.base_url).rstrip("/"),
        gemini_api_key=env.get("GEMINI_API_KEY") or None,
    )
    if provider == "gemini" and not settings.gemini_api_key:
        issues.append("GEMINI_API_KEY: required when generation.provider is 'gemini'")
    return settings


def parse_concurrency(data: Mapping[str, Any], issues: List[str], env: Mapping[str, str]) -> ConcurrencySettings:
    block = _mapping(data, "concurrency", issues)
    defaults = ConcurrencySettings()
    base = ConcurrencySettings(
        feeds=_int_field(block, "feeds", defaults.feeds, 1, 16, "concurrency", issues),
        hydrate=_int_field(block, "hydrate", defaults.hydrate, 1, 12, "concurrency", issues),
        hydrate_per_host=_int_field(block, "hydrate_per_host", defaults.hydrate_per_host, 1, 3, "concurrency", issues),
        summaries=_int_field(block, "summaries", defaults.summaries, 1, 10, "concurrency", issues),
        summary_retries=_int_field(block, "summary_retries", defaults.summary_retries, 1, 5, "concurrency", issues),
        reading_wpm=_int_field(block, "reading_wpm", defaults.reading_wpm, 20, 200, "concurrency", issues),
        feed_timeout_s=_float_field(block, "feed_timeout_s", defaults.feed_timeout_s, 1, 300, "concurrency", issues),
        page_timeout_s=_float_field(block, "page_timeout_s", defaults.page_timeout_s, 1, 120, "concurrency", issues),
    )
    base.feeds = env_int(env, "FEED_CONCURRENCY", base.feeds, 1, 16)
    base.hydrate = env_int(env, "HYDRATE_CONCURRENCY", base.hydrate, 1, 12)
    base.hydrate_per_host = env_int(env, "HYDRATE_PER_DOMAIN_CONCURRENCY", base.hydrate_per_host, 1, 3)
    base.summaries = env_int(env, "SUMMARY_CONCURRENCY", base.summaries, 1, 10)
    base.summary_retries = env_int(env, "SUMMARY_RETRIES", base.summary_retries, 1, 5)
    base.reading_wpm = env_int(env, "READING_WPM", base.reading_wpm, 20, 200)
    # Per-host cap never exceeds the global cap
    base.hydrate_per_host = min(base.hydrate_per_host, base.hydrate)
    return base


def parse_filters(data: Mapping[str, Any], issues: List[str]) -> FilterSettings:
    block = _mapping(data, "filters", issues)
    defaults = FilterSettings()
    settings = FilterSettings(
        allowed_hosts=_str_list(block, "allowed_hosts", defaults.allowed_hosts, "filters", issues),
        marketing_hosts=_str_list(block, "marketing_hosts", defaults.marketing_hosts, "filters", issues),
        marketing_keywords=_str_list(block, "marketing_keywords", defaults.marketing_keywords, "filters", issues),
        marketing_exempt_tag=str(block.get("marketing_exempt_tag", defaults.marketing_exempt_tag)),
        max_marketing_ratio=_float_field(block, "max_marketing_ratio", defaults.max_marketing_ratio, 0.0, 1.0, "filters", issues),
        min_distinct_feeds=_int_field(block, "min_distinct_feeds", defaults.min_distinct_feeds, 0, 100, "filters", issues),
    )
    return settings


def parse_quality(data: Mapping[str, Any], issues: List[str]) -> QualityThresholds:
    block = _mapping(data, "quality", issues)
    defaults = QualityThresholds()
    sections = _default_sections()
    raw_sections = block.get("sections") or {}
    if not isinstance(raw_sections, dict):
        issues.append("quality.sections: must be a mapping of section name to thresholds")
        raw_sections = {}
    for name, raw in raw_sections.items():
        if name not in SECTION_NAMES:
            issues.append(f"quality.sections.{name}: unknown section (expected one of {', '.join(SECTION_NAMES)})")
            continue
        if not isinstance(raw, dict):
            issues.append(f"quality.sections.{name}: must be a mapping")
            continue
        base = sections[name]
        path = f"quality.sections.{name}"
        threshold = SectionThreshold(
            min_words=_int_field(raw, "min_words", base.min_words, 0, 20_000, path, issues),
            max_words=_int_field(raw, "max_words", base.max_words, 1, 20_000, path, issues),
            min_paragraphs=_int_field(raw, "min_paragraphs", base.min_paragraphs, 0, 100, path, issues),
        )
        if threshold.min_words > threshold.max_words:
            issues.append(f"{path}: min_words must not exceed max_words")
        sections[name] = threshold

    return QualityThresholds(
        sections=sections,
        min_citations_per_paragraph=_float_field(block, "min_citations_per_paragraph", defaults.min_citations_per_paragraph, 0.0, 10.0, "quality", issues),
        min_cited_sources=_int_field(block, "min_cited_sources", defaults.min_cited_sources, 0, 100, "quality", issues),
        max_section_overlap=_float_field(block, "max_section_overlap", defaults.max_section_overlap, 0.0, 1.0, "quality", issues),
        duplicate_min_chars=_int_field(block, "duplicate_min_chars", defaults.duplicate_min_chars, 1, 500, "quality", issues),
    )


def parse_paths(data: Mapping[str, Any], issues: List[str], base_dir: Path) -> PathSettings:
    block = _mapping(data, "paths", issues)
    content_dir = base_dir / str(block.get("content_dir", "content"))
    return PathSettings(
        editions_dir=base_dir / str(block["editions_dir"]) if "editions_dir" in block else content_dir / "editions",
        cache_dir=base_dir / str(block["cache_dir"]) if "cache_dir" in block else content_dir / "cache",
    )


def parse_feeds(data: Mapping[str, Any], issues: List[str]) -> List[FeedSource]:
    feeds_raw = data.get("feeds")
    if not isinstance(feeds_raw, list):
        issues.append("feeds: required list missing")
        return []
    if not feeds_raw:
        issues.append("feeds: must contain at least one feed")

    feeds: List[FeedSource] = []
    for index, raw in enumerate(feeds_raw):
        prefix = f"feeds[{index}]"
        if not isinstance(raw, dict):
            issues.append(f"{prefix}: must be a mapping with title and url")
            continue
        title = raw.get("title")
        url = raw.get("url")
        ok = True
        if not isinstance(title, str) or not title.strip():
            issues.append(f"{prefix}.title: required string")
            ok = False
        if not isinstance(url, str) or not url.strip():
            issues.append(f"{prefix}.url: required string")
            ok = False
        else:
            parsed = urlparse(url.strip())
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                issues.append(f"{prefix}.url: invalid URL {url!r}")
                ok = False
        tags = raw.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            issues.append(f"{prefix}.tags: must be a list of strings")
            ok = False
        if ok:
            feeds.append(FeedSource(name=title.strip(), endpoint=url.strip(), tags=list(tags)))
    return feeds


def build_config(
    config_data: Mapping[str, Any],
    feeds_data: Mapping[str, Any],
    env: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
) -> Tuple[DigestConfig, List[str]]:
    """Build a config from already-parsed YAML; returns the config and every issue found."""
    env = os.environ if env is None else env
    issues: List[str] = []

    tz_name = config_data.get("timezone", "UTC")
    if not isinstance(tz_name, str) or not tz_name.strip():
        issues.append("timezone: required string")
        tz_name = "UTC"
    else:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            issues.append(f"timezone: unknown IANA timezone {tz_name!r}")
            tz_name = "UTC"

    language = config_data.get("language", "English")
    if not isinstance(language, str) or not language.strip():
        issues.append("language: required string")
        language = "English"

    config = DigestConfig(
        timezone=tz_name,
        language=language.strip(),
        digest=parse_digest(config_data, issues),
        generation=parse_generation(config_data, issues, env),
        concurrency=parse_concurrency(config_data, issues, env),
        filters=parse_filters(config_data, issues),
        quality=parse_quality(config_data, issues),
        paths=parse_paths(config_data, issues, base_dir or Path.cwd()),
        feeds=parse_feeds(feeds_data, issues),
    )
    return config, issues


def load_config(
    config_path: str = "config.yml",
    feeds_path: str = "feeds.yml",
    env: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
) -> DigestConfig:
    """
    Load and validate ``config.yml`` and ``feeds.yml``.

    Raises:
        ConfigurationError: listing every issue found across both files
    """
    issues: List[str] = []
    config_data = read_yaml(Path(config_path), issues)
    feeds_data = read_yaml(Path(feeds_path), issues)
    if config_data is None or feeds_data is None:
        raise ConfigurationError(issues)

    config, more = build_config(config_data, feeds_data, env=env, base_dir=base_dir)
    issues.extend(more)
    if issues:
        raise ConfigurationError(issues)

    logger.info(
        f"Loaded configuration: {len(config.feeds)} feeds, timezone={config.timezone}, "
        f"model={config.generation.provider}:{config.generation.model}"
    )
    return config
