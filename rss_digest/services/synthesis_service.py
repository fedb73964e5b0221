"""
Long-form briefing synthesis.

One generation request covers every narrative item. Each draft passes
through the quality gate: a rejected draft is retried with reinforced
instructions while attempts remain, the last draft is accepted with its
violations downgraded to warnings once they run out, and a deterministic
theme-driven briefing stands in when the model never produces a usable
draft.
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rss_digest.models.content import (
    SECTION_NAMES,
    BriefingDraft,
    NarrativeItem,
    QAReport,
    SynthesisOutcome,
    SynthesisProvenance,
    TimelineEntry,
)
from rss_digest.pipeline.quality_validator import QualityValidator
from rss_digest.services.ai_service import AIServiceError, TextGenerationService, render_prompt
from rss_digest.services.theme_extraction import SourceDiversityThemeScorer, ThemeScorer
from rss_digest.utils.error_monitoring import ErrorHandler, GenerationParseFailure, GenerationTimeout
from rss_digest.utils.text import count_words, dedupe_strings, shorten_feed_name, split_sentences


QUOTED_TITLE = re.compile(r"[«“\"]([^»”\"]{8,120})[»”\"]\s*\(([^)]+)\)")
_LANGUAGE_SUFFIX = re.compile(r"\s\[[a-z]{2}\]$")

WATCH_KEYWORDS = re.compile(
    r"\b(deadline|vote|decision|launch|report|expected|scheduled|forecast|target|next|will|"
    r"échéance|vote|décision|prévu|objectif)\b",
    re.IGNORECASE,
)


def parse_briefing_json(raw: str) -> BriefingDraft:
    """
    Extract the JSON object between the first '{' and the last '}'.

    Raises:
        GenerationParseFailure: when no object parses or synthesis/analysis are missing
    """
    text = (raw or "").strip()
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise GenerationParseFailure("briefing response contains no JSON object")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise GenerationParseFailure(f"briefing JSON invalid: {e}") from e
    if not isinstance(data, dict):
        raise GenerationParseFailure("briefing JSON is not an object")

    sections: Dict[str, str] = {}
    for name in SECTION_NAMES:
        value = data.get(name, "")
        if isinstance(value, list):
            value = "\n\n".join(str(v).strip() for v in value if str(v).strip())
        elif not isinstance(value, str):
            value = "" if value is None else str(value)
        sections[name] = value.strip()

    missing = [name for name in ("synthesis", "analysis") if not sections[name]]
    if missing:
        raise GenerationParseFailure(f"briefing JSON missing required sections: {', '.join(missing)}")

    timeline: List[TimelineEntry] = []
    raw_timeline = data.get("timeline")
    if isinstance(raw_timeline, list):
        for entry in raw_timeline:
            if not isinstance(entry, dict) or not entry.get("title"):
                continue
            timeline.append(TimelineEntry(
                title=str(entry.get("title", "")).strip(),
                summary=str(entry.get("summary", "")).strip(),
                date=str(entry.get("date", "")).strip(),
                source=str(entry.get("source", "")).strip(),
                url=str(entry.get("url", "")).strip(),
            ))

    return BriefingDraft(timeline=timeline, **sections)


def format_stories(items: Sequence[NarrativeItem]) -> str:
    blocks = []
    for index, item in enumerate(items, start=1):
        lines = [
            f"[{index}] {shorten_feed_name(item.feed)}: {item.title}",
            f"URL: {item.url}",
        ]
        if item.published_at:
            lines.append(f"Published: {item.published_at}")
        lines.append(f"Abstract: {item.summary.abstract}")
        lines.extend(f"- {bullet}" for bullet in item.summary.bullets)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_briefing_prompt(
    prompts: Dict[str, Any],
    items: Sequence[NarrativeItem],
    validator: QualityValidator,
    language: str,
    timezone: str,
    attempt: int = 1,
    max_attempts: int = 2,
    previous_errors: Optional[Sequence[str]] = None,
) -> str:
    context: Dict[str, Any] = {
        "language": language,
        "timezone": timezone,
        "stories": format_stories(items),
        "attempt": attempt,
        "max_attempts": max_attempts,
    }
    total = 0
    for name in SECTION_NAMES:
        threshold = validator.thresholds.sections.get(name)
        context[f"{name}_paragraphs"] = threshold.min_paragraphs if threshold else 1
        context[f"{name}_words"] = threshold.min_words if threshold else 0
        total += threshold.min_words if threshold else 0
    context["total_words"] = total

    extra: List[str] = []
    if attempt > 1:
        extra.append(prompts.get("briefing", {}).get("reinforcement", "").format(**context))
        if previous_errors:
            extra.append("Fix these problems from the previous draft:\n" + "\n".join(f"- {e}" for e in previous_errors))
    return render_prompt(prompts, "briefing", context, extra_instructions=extra)


def _normalise_title(title: str) -> str:
    lowered = re.sub(r"\s+", " ", (title or "").lower()).strip()
    return re.sub(r"[^\w\s'\-]", "", lowered).strip()


def ensure_markdown_links(text: str, items: Sequence[NarrativeItem]) -> str:
    """Rewrite «Title» (Feed) mentions of known stories into [Title](url) (Feed)."""
    lookup: Dict[str, NarrativeItem] = {}
    for item in items:
        lookup.setdefault(_normalise_title(item.title), item)
        lookup.setdefault(_normalise_title(_LANGUAGE_SUFFIX.sub("", item.title)), item)

    def replace(match: re.Match) -> str:
        item = lookup.get(_normalise_title(match.group(1)))
        if item is None or not item.url:
            return match.group(0)
        return f"[{match.group(1).strip()}]({item.url}) ({match.group(2).strip()})"

    return QUOTED_TITLE.sub(replace, text or "")


def compute_reading_minutes(word_count: int, wpm: int, minimum: int, maximum: int) -> int:
    minutes = max(1, math.ceil(word_count / max(1, wpm)))
    return max(minimum, min(maximum, minutes))


def default_timeline(items: Sequence[NarrativeItem], limit: int = 12) -> List[TimelineEntry]:
    """Oldest first; undated stories go last."""
    ordered = sorted(items, key=lambda i: (not i.published_at, i.published_at, i.position))
    return [
        TimelineEntry(
            title=item.title,
            summary=item.summary.abstract,
            date=item.published_at[:10],
            source=shorten_feed_name(item.feed),
            url=item.url,
        )
        for item in ordered[:limit]
    ]


def _cite(item: NarrativeItem) -> str:
    return f"[↗ {shorten_feed_name(item.feed)}]({item.url})"


class FallbackSynthesizer:
    """Deterministic briefing built from the summaries alone."""

    def __init__(self, theme_scorer: Optional[ThemeScorer] = None, max_narrative_items: int = 16) -> None:
        self.theme_scorer = theme_scorer or SourceDiversityThemeScorer()
        self.max_narrative_items = max_narrative_items
        self.logger = logging.getLogger(__name__)

    def synthesis(self, items: Sequence[NarrativeItem]) -> str:
        paragraphs = [
            f"In {shorten_feed_name(item.feed)}, «{item.title}» stands out: {item.summary.abstract} {_cite(item)}"
            for item in items[:self.max_narrative_items]
        ]
        return "\n\n".join(paragraphs) or "No stories were available for this edition."

    def analysis(self, items: Sequence[NarrativeItem]) -> str:
        themes = self.theme_scorer.score(items, limit=5)
        if len(items) < 6 or len(themes) < 2:
            paragraphs = [
                f"«{item.title}» matters because {item.summary.bullets[0].rstrip('.')}. "
                f"{item.summary.bullets[1]} {_cite(item)}"
                for item in items[:self.max_narrative_items]
                if len(item.summary.bullets) >= 2
            ]
            return "\n\n".join(paragraphs)

        paragraphs = []
        for theme in themes:
            feeds = sorted({shorten_feed_name(i.feed) for i in theme.items})
            examples = theme.items[:2]
            details = " ".join(i.summary.bullets[0] for i in examples if i.summary.bullets)
            citations = " ".join(_cite(i) for i in examples)
            paragraphs.append(
                f"Developments around {theme.term} run through {len(theme.items)} stories "
                f"from {', '.join(feeds)}. {details} {citations}"
            )
        return "\n\n".join(paragraphs)

    def key_points(self, items: Sequence[NarrativeItem]) -> str:
        candidates: List[Tuple[str, NarrativeItem]] = []
        for item in items:
            for bullet in item.summary.bullets:
                if len(bullet) <= 160:
                    candidates.append((bullet, item))
        kept = dedupe_strings(b for b, _ in candidates)[:7]
        source_of = {}
        for bullet, item in candidates:
            source_of.setdefault(bullet, item)
        return "\n\n".join(f"- {bullet} {_cite(source_of[bullet])}" for bullet in kept)

    def watch_points(self, items: Sequence[NarrativeItem]) -> str:
        ordered = sorted(items, key=lambda i: (not i.published_at, i.published_at, i.position))[:6]
        lines = []
        for item in ordered:
            indicator = next(
                (b for b in item.summary.bullets if re.search(r"\d", b) or WATCH_KEYWORDS.search(b)),
                "Indicator to be confirmed",
            )
            lines.append(f"- {item.title}: {indicator} {_cite(item)}")
        return "\n\n".join(lines)

    def curiosities(self, items: Sequence[NarrativeItem]) -> str:
        picks = list(items[-3:])
        lines = []
        for item in picks:
            clue = item.summary.bullets[-1] if item.summary.bullets else item.summary.abstract
            lines.append(f"What remains unclear about «{item.title}»? {clue} {_cite(item)}")
        return "\n\n".join(lines)

    def positives(self, items: Sequence[NarrativeItem]) -> str:
        paragraphs = []
        for item in items[:3]:
            bullets = item.summary.bullets
            lever = bullets[1] if len(bullets) > 1 else ""
            outlook = bullets[2] if len(bullets) > 2 else ""
            first = split_sentences(item.summary.abstract)
            opening = first[0] if first else item.summary.abstract
            paragraphs.append(f"{opening} Lever: {lever} Outlook: {outlook} {_cite(item)}".replace("  ", " "))
        return "\n\n".join(paragraphs)

    def build(self, items: Sequence[NarrativeItem]) -> BriefingDraft:
        self.logger.info(f"Building fallback briefing from {len(items)} stories")
        return BriefingDraft(
            synthesis=self.synthesis(items),
            analysis=self.analysis(items),
            key_points=self.key_points(items),
            watch_points=self.watch_points(items),
            curiosities=self.curiosities(items),
            positives=self.positives(items),
            timeline=default_timeline(items),
        )


class SynthesisService:
    def __init__(
        self,
        generator: TextGenerationService,
        prompts: Dict[str, Any],
        validator: QualityValidator,
        language: str = "English",
        timezone: str = "UTC",
        max_attempts: int = 2,
        reading_wpm: int = 55,
        reading_range: Tuple[int, int] = (55, 60),
        fallback: Optional[FallbackSynthesizer] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self.generator = generator
        self.prompts = prompts
        self.validator = validator
        self.language = language
        self.timezone = timezone
        self.max_attempts = max(1, max_attempts)
        self.reading_wpm = reading_wpm
        self.reading_range = reading_range
        self.fallback = fallback or FallbackSynthesizer()
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    def finalise(self, draft: BriefingDraft, items: Sequence[NarrativeItem]) -> BriefingDraft:
        """Repair links, fill a missing timeline, recompute word count and reading time."""
        for name in SECTION_NAMES:
            setattr(draft, name, ensure_markdown_links(getattr(draft, name), items))
        if not draft.timeline:
            draft.timeline = default_timeline(items)
        draft.word_count = sum(count_words(text) for text in draft.sections().values())
        draft.reading_minutes = compute_reading_minutes(
            draft.word_count, self.reading_wpm, self.reading_range[0], self.reading_range[1]
        )
        return draft

    async def _request(self, items: Sequence[NarrativeItem], attempt: int,
                       previous_errors: Sequence[str]) -> Optional[BriefingDraft]:
        prompt = build_briefing_prompt(
            self.prompts, items, self.validator, self.language, self.timezone,
            attempt=attempt, max_attempts=self.max_attempts, previous_errors=previous_errors,
        )
        try:
            raw = await self.generator.generate(prompt, purpose="briefing")
            return parse_briefing_json(raw)
        except (GenerationTimeout, GenerationParseFailure, AIServiceError) as e:
            self.error_handler.handle_error(e, "synthesis", "generate_briefing", {"attempt": attempt})
        except Exception as e:  # noqa: BLE001
            self.error_handler.handle_error(e, "synthesis", "generate_briefing", {"attempt": attempt})
        return None

    async def synthesize(self, items: Sequence[NarrativeItem]) -> SynthesisOutcome:
        last: Optional[Tuple[BriefingDraft, QAReport]] = None
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            previous_errors = last[1].errors if last else []
            draft = await self._request(items, attempt, previous_errors)
            if draft is None:
                continue
            draft = self.finalise(draft, items)
            report = self.validator.validate(draft, items)
            last = (draft, report)
            if report.passed:
                self.logger.info(f"Briefing accepted on attempt {attempt}/{self.max_attempts}")
                return SynthesisOutcome(
                    draft=draft,
                    provenance=SynthesisProvenance.GENERATED,
                    attempts=attempt,
                    qa=report,
                    warnings=list(report.warnings),
                )
            self.logger.warning(f"Briefing attempt {attempt}/{self.max_attempts} rejected: {'; '.join(report.errors)}")

        if last is not None:
            draft, report = last
            warnings = list(report.warnings) + [f"QA error: {error}" for error in report.errors]
            self.logger.warning(f"Accepting last briefing draft with {len(warnings)} warnings")
            return SynthesisOutcome(
                draft=draft,
                provenance=SynthesisProvenance.ACCEPTED_WITH_WARNINGS,
                attempts=attempts,
                qa=report,
                warnings=warnings,
            )

        draft = self.finalise(self.fallback.build(items), items)
        report = self.validator.validate(draft, items)
        warnings = [f"Synthesis fallback used after {attempts} failed generation attempt(s)"]
        warnings += list(report.warnings) + [f"QA error: {error}" for error in report.errors]
        return SynthesisOutcome(
            draft=draft,
            provenance=SynthesisProvenance.FALLBACK,
            attempts=attempts,
            qa=report,
            warnings=warnings,
        )
