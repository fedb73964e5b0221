"""
Edition assembly and persistence.

An edition is a markdown file with YAML frontmatter (metadata and every
source summary) followed by the rendered briefing. Files are written
atomically, so a date either has a complete edition or none.
"""

import logging
import re
from datetime import date as date_cls, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from jinja2 import Environment, FileSystemLoader, TemplateError

from rss_digest.models.content import (
    BriefingDraft,
    Edition,
    EditionSource,
    NarrativeItem,
    SynthesisOutcome,
)
from rss_digest.utils.fileio import atomic_write_text


DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

SECTION_HEADINGS = [
    ("synthesis", "Synthesis"),
    ("analysis", "Analysis"),
    ("key_points", "Key Points"),
    ("watch_points", "Watch Points"),
    ("curiosities", "Curiosities"),
    ("positives", "Positive Signals"),
]

_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*\n?(.*)\Z", re.DOTALL)


class CompilationError(Exception):
    """Edition could not be rendered, written or read back."""
    pass


def build_edition_title(edition_date: str) -> str:
    parsed = datetime.strptime(edition_date, "%Y-%m-%d")
    return f"Daily Brief — {parsed.day:02d} {parsed.strftime('%b')} {parsed.year}"


def group_sources(items: Sequence[NarrativeItem]) -> List[EditionSource]:
    """One entry per feed, feeds and items in narrative order."""
    by_feed: Dict[str, EditionSource] = {}
    for item in items:
        by_feed.setdefault(item.feed, EditionSource(feed=item.feed)).items.append(item)
    return list(by_feed.values())


def split_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    match = _FRONTMATTER.match(text)
    if not match:
        raise CompilationError("edition has no YAML frontmatter")
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise CompilationError(f"edition frontmatter is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise CompilationError("edition frontmatter must be a mapping")
    return data, match.group(2)


def dump_frontmatter(data: Dict[str, Any]) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False, width=1000)


class EditionCompiler:
    def __init__(self, editions_dir: Path, template_dir: Optional[Path] = None) -> None:
        self.editions_dir = Path(editions_dir)
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        # Markdown output: autoescape would mangle quotes and ampersands in prose
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.logger = logging.getLogger(__name__)

    def edition_path(self, edition_date: str) -> Path:
        return self.editions_dir / f"{edition_date}.md"

    def compile(
        self,
        edition_date: str,
        tz_name: str,
        outcome: SynthesisOutcome,
        narrative: Sequence[NarrativeItem],
        qa_flags: Sequence[str] = (),
        generated_at: Optional[datetime] = None,
    ) -> Edition:
        warnings: List[str] = []
        for warning in list(qa_flags) + list(outcome.warnings):
            if warning not in warnings:
                warnings.append(warning)
        return Edition(
            date=edition_date,
            title=build_edition_title(edition_date),
            timezone=tz_name,
            briefing=outcome.draft,
            sources=group_sources(narrative),
            generated_at=generated_at or datetime.now(timezone.utc),
            qa_warnings=warnings,
            synthesis_provenance=outcome.provenance,
        )

    def render_body(self, title: str, briefing: BriefingDraft) -> str:
        try:
            template = self.env.get_template("edition.md.j2")
            return template.render(
                title=title,
                sections=SECTION_HEADINGS,
                briefing=briefing.sections(),
                timeline=[entry.to_dict() for entry in briefing.timeline],
            )
        except TemplateError as e:
            self.logger.error("Edition template rendering failed: %s", e, exc_info=True)
            raise CompilationError(f"Edition template error: {e}") from e

    def render(self, edition: Edition) -> str:
        body = self.render_body(edition.title, edition.briefing).strip()
        return f"---\n{dump_frontmatter(edition.frontmatter())}---\n\n{body}\n"

    def write(self, edition: Edition) -> Path:
        path = self.edition_path(edition.date)
        content = self.render(edition)
        try:
            atomic_write_text(path, content)
        except OSError as e:
            raise CompilationError(f"Failed to write edition {path}: {e}") from e
        self.logger.info(
            f"📰 Edition written: {path} ({edition.briefing.word_count} words, "
            f"{edition.briefing.reading_minutes} min, {edition.synthesis_provenance.value})"
        )
        return path

    def load(self, path: Path) -> Tuple[Dict[str, Any], str]:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise CompilationError(f"Failed to read edition {path}: {e}") from e
        return split_frontmatter(text)

    def find_fallback_edition(self, edition_date: str, lookback_days: int) -> Optional[Path]:
        """Most recent readable edition from the previous ``lookback_days`` days."""
        target = date_cls.fromisoformat(edition_date)
        for offset in range(1, lookback_days + 1):
            candidate = self.edition_path((target - timedelta(days=offset)).isoformat())
            if not candidate.exists():
                continue
            try:
                self.load(candidate)
            except CompilationError as e:
                self.logger.warning(f"Skipping unreadable fallback edition {candidate}: {e}")
                continue
            return candidate
        return None

    def reissue(self, source: Path, edition_date: str, generated_at: Optional[datetime] = None) -> Path:
        """Copy a previous edition under a new date, refreshing date, title and generatedAt."""
        frontmatter, body = self.load(source)
        previous_date = str(frontmatter.get("date", source.stem))
        frontmatter["date"] = edition_date
        frontmatter["title"] = build_edition_title(edition_date)
        frontmatter["generatedAt"] = (generated_at or datetime.now(timezone.utc)).isoformat()
        warnings = list(frontmatter.get("qaWarnings") or [])
        warnings.append(f"Re-issued from the {previous_date} edition: not enough fresh stories.")
        frontmatter["qaWarnings"] = warnings

        body = re.sub(r"\A# .*", f"# {frontmatter['title']}", body.strip(), count=1)

        path = self.edition_path(edition_date)
        content = f"---\n{dump_frontmatter(frontmatter)}---\n\n{body}\n"
        try:
            atomic_write_text(path, content)
        except OSError as e:
            raise CompilationError(f"Failed to write edition {path}: {e}") from e
        self.logger.warning(f"Re-issued edition {source.name} as {path.name}")
        return path
