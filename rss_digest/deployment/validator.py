"""
Configuration readiness validator for ``rss-digest --validate-config``.

Checks the operator configuration, feed list, quality thresholds,
generation settings and output paths, and optionally probes the
text-generation backend. Any FAIL means the pipeline should not run.
"""

import logging
import os
import sys
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from rss_digest.models.content import SECTION_NAMES
from rss_digest.services.ai_service import AIServiceError, create_generation_service
from rss_digest.utils.config_loader import DigestConfig, read_yaml, build_config


@dataclass
class ValidationResult:
    """Result of a validation check."""
    name: str
    status: str  # 'PASS', 'FAIL', 'WARN'
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class ReadinessReport:
    timestamp: datetime
    results: Dict[str, List[ValidationResult]] = field(default_factory=dict)
    critical_issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0

    @property
    def ready(self) -> bool:
        return self.failed_checks == 0

    def calculate_metrics(self) -> None:
        all_results = [r for results in self.results.values() for r in results]
        self.total_checks = len(all_results)
        self.passed_checks = sum(1 for r in all_results if r.status == "PASS")
        self.failed_checks = sum(1 for r in all_results if r.status == "FAIL")


class ConfigReadinessValidator:
    CATEGORIES = ("configuration", "feeds", "thresholds", "generation", "paths")

    def __init__(
        self,
        config_path: str = "config.yml",
        feeds_path: str = "feeds.yml",
        env: Optional[Mapping[str, str]] = None,
        base_dir: Optional[Path] = None,
        check_connectivity: bool = False,
    ) -> None:
        self.config_path = Path(config_path)
        self.feeds_path = Path(feeds_path)
        self.env = os.environ if env is None else env
        self.base_dir = base_dir
        self.check_connectivity = check_connectivity
        self.logger = logging.getLogger(__name__)
        self.results: Dict[str, List[ValidationResult]] = {c: [] for c in self.CATEGORIES}

    def _add(self, category: str, name: str, status: str, message: str, **details: Any) -> None:
        self.results[category].append(ValidationResult(name, status, message, details or None))

    async def validate_all(self) -> ReadinessReport:
        self.logger.info("Validating configuration readiness...")
        config = self._validate_configuration()
        if config is not None:
            self._validate_feeds(config)
            self._validate_thresholds(config)
            await self._validate_generation(config)
            self._validate_paths(config)
        return self._generate_report()

    def _validate_configuration(self) -> Optional[DigestConfig]:
        py_ok = sys.version_info >= (3, 10)
        self._add("configuration", "Python Version", "PASS" if py_ok else "FAIL",
                  f"Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}")

        issues: List[str] = []
        config_data = read_yaml(self.config_path, issues)
        feeds_data = read_yaml(self.feeds_path, issues)
        if config_data is None or feeds_data is None:
            for issue in issues:
                self._add("configuration", "Files", "FAIL", issue)
            return None

        config, more = build_config(config_data, feeds_data, env=self.env, base_dir=self.base_dir)
        issues.extend(more)
        if issues:
            for issue in issues:
                self._add("configuration", "Schema", "FAIL", issue)
        else:
            self._add("configuration", "Schema", "PASS",
                      f"{self.config_path.name} and {self.feeds_path.name} are valid")
        self._add("configuration", "Timezone", "PASS", f"timezone = {config.timezone}")
        return config

    def _validate_feeds(self, config: DigestConfig) -> None:
        count = len(config.feeds)
        minimum = config.filters.min_distinct_feeds
        if count >= minimum:
            self._add("feeds", "Feed count", "PASS", f"{count} feeds configured")
        else:
            self._add("feeds", "Feed count", "WARN",
                      f"{count} feeds configured; editions will be flagged below {minimum} distinct feeds")

        duplicates = [url for url, n in Counter(f.endpoint for f in config.feeds).items() if n > 1]
        if duplicates:
            self._add("feeds", "Duplicate URLs", "WARN", f"{len(duplicates)} feed URLs appear more than once",
                      urls=duplicates)
        else:
            self._add("feeds", "Duplicate URLs", "PASS", "every feed URL is unique")

        names = [name for name, n in Counter(f.name for f in config.feeds).items() if n > 1]
        if names:
            self._add("feeds", "Duplicate titles", "WARN", f"feed titles used more than once: {', '.join(names)}")

        if config.filters.allowed_hosts:
            self._add("feeds", "Allow-list", "PASS", f"{len(config.filters.allowed_hosts)} allowed hosts")
        else:
            self._add("feeds", "Allow-list", "WARN", "filters.allowed_hosts is empty; every host is accepted")

    def _validate_thresholds(self, config: DigestConfig) -> None:
        sections = config.quality.sections
        missing = [name for name in SECTION_NAMES if name not in sections]
        if missing:
            self._add("thresholds", "Sections", "FAIL", f"no thresholds for: {', '.join(missing)}")
            return
        min_total = sum(t.min_words for t in sections.values())
        max_total = sum(t.max_words for t in sections.values())
        wpm = config.concurrency.reading_wpm
        lo, hi = config.digest.reading_minutes_min, config.digest.reading_minutes_max
        self._add("thresholds", "Section lengths", "PASS",
                  f"{min_total}-{max_total} words across {len(sections)} sections")
        if min_total / wpm > hi or max_total / wpm < lo:
            self._add("thresholds", "Reading time", "WARN",
                      f"section word ranges imply {min_total // wpm}-{max_total // wpm} minutes at {wpm} wpm, "
                      f"outside the configured {lo}-{hi} minutes")
        else:
            self._add("thresholds", "Reading time", "PASS", f"{lo}-{hi} minutes at {wpm} wpm")

    async def _validate_generation(self, config: DigestConfig) -> None:
        settings = config.generation
        self._add("generation", "Provider", "PASS", f"{settings.provider}:{settings.model}",
                  timeout_ms=settings.timeout_ms, attempts=settings.briefing_attempts)
        if settings.provider == "gemini" and not settings.gemini_api_key:
            self._add("generation", "API key", "FAIL", "GEMINI_API_KEY is missing")
            return
        if not self.check_connectivity:
            return
        try:
            service = create_generation_service(settings)
        except ValueError as e:
            self._add("generation", "Connectivity", "FAIL", str(e))
            return
        try:
            await service.warmup()
            self._add("generation", "Connectivity", "PASS", f"{settings.provider} backend reachable")
        except AIServiceError as e:
            self._add("generation", "Connectivity", "FAIL", str(e))
        finally:
            await service.close()

    def _validate_paths(self, config: DigestConfig) -> None:
        checks: List[Tuple[str, Path]] = [
            ("Editions directory", config.paths.editions_dir),
            ("Cache directory", config.paths.cache_dir),
        ]
        for name, path in checks:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._add("paths", name, "FAIL", f"Cannot create {path}: {e}")
                continue
            if os.access(path, os.W_OK):
                self._add("paths", name, "PASS", f"{path} exists and is writable")
            else:
                self._add("paths", name, "FAIL", f"{path} exists but is NOT writable")

    def _generate_report(self) -> ReadinessReport:
        report = ReadinessReport(timestamp=datetime.now(timezone.utc), results=self.results)
        for category, results in self.results.items():
            for r in results:
                if r.status == "FAIL":
                    report.critical_issues.append(f"{category}: {r.message}")
                elif r.status == "WARN":
                    report.warnings.append(f"{category}: {r.message}")
        report.calculate_metrics()
        return report


def print_report(report: ReadinessReport, use_color: Optional[bool] = None) -> None:
    """Human-readable readiness report; colour only on a terminal unless forced."""
    color = sys.stdout.isatty() if use_color is None else use_color

    def paint(text: str, code: str) -> str:
        return f"\033[{code}m{text}\033[0m" if color else text

    marks = {"PASS": paint("✓", "92"), "WARN": paint("!", "93"), "FAIL": paint("✗", "91")}
    rule = "-" * 60

    print(rule)
    print(paint("rss-digest configuration readiness", "1"))
    print(f"checked at {report.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    print(rule)

    for category, results in report.results.items():
        if not results:
            continue
        failed = sum(1 for r in results if r.status == "FAIL")
        heading = f"{category} ({len(results) - failed}/{len(results)} ok)"
        print(paint(heading, "1"))
        for r in results:
            print(f"  {marks.get(r.status, '?')} {r.name}: {r.message}")
        print()

    print(rule)
    summary = (
        f"{report.passed_checks} passed, {len(report.warnings)} warnings, "
        f"{report.failed_checks} failed of {report.total_checks} checks"
    )
    if report.ready:
        print(paint(f"✅ READY: {summary}", "92"))
    else:
        print(paint(f"❌ NOT READY: {summary}", "91"))
        for issue in report.critical_issues:
            print(f"  - {issue}")
    print(rule)
