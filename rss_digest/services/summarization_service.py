"""
Per-story summaries: one abstract and exactly three bullets.

Each story runs a bounded state machine

    Attempt(n) -> Success | Attempt(n + 1) | Fallback

where every model response is first reduced to a tagged result by the pure
``classify_response`` function. Summarization never raises: exhausted
stories receive a deterministic fallback summary.
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from rss_digest.models.content import NarrativeItem, PendingStory, Provenance, SummaryResult
from rss_digest.services.ai_service import AIServiceError, TextGenerationService, render_prompt
from rss_digest.services.cache_service import SeenSet
from rss_digest.services.rss import fingerprint_url
from rss_digest.utils.error_monitoring import (
    ErrorHandler,
    GenerationParseFailure,
    GenerationRefusal,
    GenerationTimeout,
    SummarizationFailure,
)
from rss_digest.utils.metrics import SummaryMetrics
from rss_digest.utils.text import detect_language, display_title, enforce_char_limit, split_sentences


REFUSAL_PATTERNS = [
    re.compile(r"cannot (access|browse|fetch)", re.IGNORECASE),
    re.compile(r"as an? (ai|language) model", re.IGNORECASE),
    re.compile(r"do not have (access|the ability)", re.IGNORECASE),
    re.compile(r"i (can't|cannot) (open|visit)", re.IGNORECASE),
    re.compile(r"no (content|article) provided", re.IGNORECASE),
    re.compile(r"provide (more )?information", re.IGNORECASE),
    re.compile(r"not (enough|sufficient) (information|context)", re.IGNORECASE),
    re.compile(r"sorry,? i", re.IGNORECASE),
]

_LABEL_SEPARATORS = r"[:\-–—]"
TITLE_LINE = re.compile(rf"^(\*\*|\*)?\s*(TITLE|TITRE)\s*{_LABEL_SEPARATORS}\s*", re.IGNORECASE)
ABSTRACT_LINE = re.compile(
    rf"^(\*\*|\*)?\s*(ABSTRACT|SUMMARY|RÉSUMÉ|RESUME|SYNTHÈSE)\s*{_LABEL_SEPARATORS}\s*", re.IGNORECASE
)
BULLET_LINE = re.compile(r"^(?:[-*•]|\d+[.)])\s+")
NUMBER_PREFIX = re.compile(r"^[0-9]+[).:\-]\s*")
CLAUSE_SPLIT = re.compile(r"[;,:–—\-]\s+")

PADDING_BULLETS = [
    "The model returned a very concise summary.",
    "Further details were not extracted automatically.",
    "See the original article for the remaining details.",
]

FALLBACK_ENGINE = "local-extractive"


class ResponseKind(Enum):
    SUCCESS = "success"
    REFUSAL = "refusal"
    PARSE_FAILURE = "parse_failure"
    REQUEST_ERROR = "request_error"


@dataclass(frozen=True)
class ParsedSummary:
    abstract: str
    bullets: List[str]
    translated_title: Optional[str] = None


@dataclass(frozen=True)
class ClassifiedResponse:
    """Tagged result of one attempt."""
    kind: ResponseKind
    summary: Optional[ParsedSummary] = None
    detail: str = ""


def normalise_model_output(raw: str) -> str:
    """Drop carriage returns and rewrite '•'/'*' bullet markers as '- '."""
    lines = raw.replace("\r", "").split("\n")
    return "\n".join(re.sub(r"^\s*[•*]\s+", "- ", line) for line in lines).strip()


def is_refusal(text: str) -> bool:
    return any(rx.search(text) for rx in REFUSAL_PATTERNS)


def _strip_label(line: str, pattern: re.Pattern) -> str:
    return pattern.sub("", line, count=1).strip().lstrip("*").strip()


def parse_summary_output(raw: str) -> ParsedSummary:
    """
    Decompose model output into an abstract and exactly three bullets.

    Bullets come from '-', '*', '•' or numbered lines; failing that from a
    semicolon-separated line, then residual sentences, then sentences and
    long clauses of the abstract, and finally generic padding.

    Raises:
        GenerationParseFailure: on empty output or when no line carries text
    """
    lines = [line.strip() for line in raw.split("\n") if line.strip()]
    if not lines:
        raise GenerationParseFailure("empty response")

    translated_title = None
    for index, line in enumerate(lines):
        if TITLE_LINE.match(line):
            translated_title = _strip_label(lines.pop(index), TITLE_LINE) or None
            break

    abstract = ""
    for index, line in enumerate(lines):
        if ABSTRACT_LINE.match(line):
            abstract = _strip_label(lines.pop(index), ABSTRACT_LINE)
            break
    if not abstract:
        for index, line in enumerate(lines):
            if not BULLET_LINE.match(line):
                abstract = lines.pop(index).strip()
                break
    if not abstract:
        # bullet-only reply: the first bullet becomes the abstract
        for index, line in enumerate(lines):
            text = BULLET_LINE.sub("", line, count=1).strip()
            if text:
                lines.pop(index)
                abstract = text
                break
    if not abstract:
        raise GenerationParseFailure("response contains no abstract line")

    bullets: List[str] = []
    for line in lines:
        if BULLET_LINE.match(line):
            text = BULLET_LINE.sub("", line, count=1).strip()
            if text:
                bullets.append(text)

    if not bullets:
        joined = " ".join(lines)
        if ";" in joined:
            for segment in re.split(r";+", joined):
                text = NUMBER_PREFIX.sub("", segment.strip())
                if text:
                    bullets.append(text)

    if len(bullets) < 3:
        residual = [line for line in lines if not BULLET_LINE.match(line)]
        for line in residual:
            for segment in split_sentences(line):
                if segment not in bullets:
                    bullets.append(segment)
                if len(bullets) >= 3:
                    break
            if len(bullets) >= 3:
                break

    if len(bullets) < 3:
        for segment in split_sentences(abstract):
            if segment not in bullets:
                bullets.append(segment)
            if len(bullets) >= 3:
                break

    if len(bullets) < 3:
        for clause in CLAUSE_SPLIT.split(abstract):
            clause = clause.strip()
            if len(clause) > 25 and clause not in bullets:
                bullets.append(clause)
            if len(bullets) >= 3:
                break

    while len(bullets) < 3:
        bullets.append(PADDING_BULLETS[len(bullets)])

    return ParsedSummary(abstract=abstract, bullets=bullets[:3], translated_title=translated_title)


def classify_response(raw: Optional[str]) -> ClassifiedResponse:
    """Pure classifier: Success, Refusal or ParseFailure."""
    cleaned = normalise_model_output(raw or "")
    if not cleaned:
        return ClassifiedResponse(ResponseKind.PARSE_FAILURE, detail="empty response")
    if is_refusal(cleaned):
        return ClassifiedResponse(ResponseKind.REFUSAL, detail=cleaned[:140])
    try:
        parsed = parse_summary_output(cleaned)
    except GenerationParseFailure as e:
        return ClassifiedResponse(ResponseKind.PARSE_FAILURE, detail=str(e))
    return ClassifiedResponse(ResponseKind.SUCCESS, summary=parsed)


def backoff_delay(attempt: int, jitter_fraction: float, base_delay: float = 0.5) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-based): base * 2^(n-1), plus jitter."""
    base = base_delay * (2 ** (attempt - 1))
    return base + base * jitter_fraction


def next_attempt(attempt: int, max_attempts: int) -> Optional[int]:
    """The following attempt number, or None once the budget is spent."""
    return attempt + 1 if attempt < max_attempts else None


def fallback_summary(title: str, url: str, max_chars: int) -> SummaryResult:
    abstract = enforce_char_limit(
        f"Automatic summary unavailable. See the original article for details: {title}.",
        min(max_chars, 380),
    )
    return SummaryResult(
        abstract=abstract,
        bullets=[
            "The summary could not be generated automatically.",
            "Editorial follow-up is needed to confirm the key points.",
            f"Source: {url or 'link not provided'}",
        ],
        provenance=Provenance.FALLBACK,
        engine=FALLBACK_ENGINE,
    )


def build_summary_prompt(prompts: Dict[str, Any], title: str, url: str, text: str,
                         language: str, max_chars: int) -> str:
    title_language = detect_language(title)
    needs_translation = title_language is not None and title_language.lower() != language.lower()
    extra: List[str] = []
    summary_cfg = prompts.get("summary", {})
    if needs_translation:
        extra.append(summary_cfg.get("translation_instruction", "").format(
            title_language=title_language, language=language))
    if len(text.strip()) < 120:
        extra.append(summary_cfg.get("short_body_instruction", ""))

    context = {
        "language": language,
        "title": title,
        "url": url,
        "text": text or "(no article text available)",
        "max_chars": min(max_chars, 380),
        "title_line": f"TITLE: <title translated into {language}>\n" if needs_translation else "",
    }
    return render_prompt(prompts, "summary", context, extra_instructions=extra)


class SummarizationService:
    """Runs the per-story state machine under a bounded concurrency pool."""

    def __init__(
        self,
        generator: TextGenerationService,
        prompts: Dict[str, Any],
        metrics: SummaryMetrics,
        language: str = "English",
        max_attempts: int = 3,
        max_chars: int = 600,
        concurrency: int = 3,
        base_delay: float = 0.5,
        error_handler: Optional[ErrorHandler] = None,
        jitter: Callable[[], float] = lambda: random.uniform(0.1, 0.3),
    ) -> None:
        self.generator = generator
        self.prompts = prompts
        self.metrics = metrics
        self.language = language
        self.max_attempts = max(1, max_attempts)
        self.max_chars = max_chars
        self.concurrency = max(1, concurrency)
        self.base_delay = base_delay
        self.error_handler = error_handler or ErrorHandler()
        self.jitter = jitter
        self.logger = logging.getLogger(__name__)

    async def _attempt(self, story: PendingStory, attempt: int) -> ClassifiedResponse:
        prompt = build_summary_prompt(
            self.prompts, story.item.title, story.item.url, story.hydrated_text or "",
            self.language, self.max_chars,
        )
        try:
            raw = await self.generator.generate(prompt, purpose="summary")
        except (GenerationTimeout, AIServiceError) as e:
            return ClassifiedResponse(ResponseKind.REQUEST_ERROR, detail=str(e))
        except Exception as e:  # noqa: BLE001
            return ClassifiedResponse(ResponseKind.REQUEST_ERROR, detail=f"{type(e).__name__}: {e}")
        return classify_response(raw)

    async def summarize_story(self, story: PendingStory) -> SummaryResult:
        title = story.item.title
        refused = False
        attempt: Optional[int] = 1
        while attempt is not None:
            outcome = await self._attempt(story, attempt)

            if outcome.kind is ResponseKind.SUCCESS and outcome.summary is not None:
                self.metrics.increment("success")
                if attempt > 1:
                    self.metrics.increment("success_after_retry")
                return SummaryResult(
                    abstract=outcome.summary.abstract,
                    bullets=list(outcome.summary.bullets),
                    provenance=Provenance.SUCCESS,
                    engine=self.generator.model,
                    translated_title=outcome.summary.translated_title,
                    via=self.generator.provider,
                )

            if outcome.kind is ResponseKind.REFUSAL:
                refused = True
                self.metrics.increment("refusal")
                self.logger.warning(
                    f"Refusal-style content attempt {attempt}/{self.max_attempts} title=\"{title}\" "
                    f"snippet=\"{outcome.detail}\""
                )
            elif outcome.kind is ResponseKind.PARSE_FAILURE:
                self.metrics.increment("parse_fail")
                self.logger.warning(
                    f"Parse failure attempt {attempt}/{self.max_attempts} title=\"{title}\": {outcome.detail}"
                )
            else:
                self.metrics.increment("request_error")
                self.logger.warning(
                    f"Request error attempt {attempt}/{self.max_attempts} title=\"{title}\": {outcome.detail}"
                )

            following = next_attempt(attempt, self.max_attempts)
            if following is not None:
                await asyncio.sleep(backoff_delay(attempt, self.jitter(), self.base_delay))
            attempt = following

        self.metrics.increment("refusal_fallback" if refused else "exhausted_fallback")
        cause = GenerationRefusal(title) if refused else GenerationParseFailure(title)
        failure = SummarizationFailure(f"{self.max_attempts} attempts failed for \"{title}\"")
        failure.__cause__ = cause
        self.error_handler.handle_error(failure, "summarization", "summarize_story", {"url": story.item.url})
        return fallback_summary(title, story.item.url, self.max_chars)

    async def summarize_all(self, stories: Sequence[PendingStory], seen: SeenSet) -> List[NarrativeItem]:
        """
        Summarize every story. The returned list is in completion order;
        callers restore ingestion order. Each fingerprint joins the seen-set
        only after its story's summary has been assigned.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        narrative: List[NarrativeItem] = []
        completed = 0

        async def run(story: PendingStory) -> None:
            nonlocal completed
            async with semaphore:
                summary = await self.summarize_story(story)
            narrative.append(NarrativeItem(
                feed=story.source.name,
                title=display_title(story.item.title, summary.translated_title),
                url=story.item.url,
                published_at=story.item.published_iso,
                summary=summary,
                position=story.position,
            ))
            seen.add(fingerprint_url(story.item.url))
            completed += 1
            self.logger.debug(f"Summaries {completed}/{len(stories)} - {story.item.title[:50]}")

        await asyncio.gather(*(run(s) for s in stories))
        self.logger.info(f"Generated {len(narrative)} summaries ({self.metrics.format_line()})")
        return narrative
