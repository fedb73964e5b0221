from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


SECTION_NAMES = (
    "synthesis",
    "analysis",
    "key_points",
    "watch_points",
    "curiosities",
    "positives",
)


@dataclass(frozen=True)
class FeedSource:
    """A configured feed. Order in configuration is the ingestion order."""
    name: str
    endpoint: str
    tags: List[str] = field(default_factory=list)

    def has_tag(self, tag: str) -> bool:
        wanted = tag.strip().lower()
        return any(t.strip().lower() == wanted for t in self.tags)


@dataclass
class CandidateItem:
    """Raw feed entry; ``url`` is the natural key."""
    title: str
    url: str
    published_at: Optional[datetime]
    raw_content: str = ""
    published_raw: Optional[str] = None

    @property
    def published_iso(self) -> str:
        if self.published_at is not None:
            return self.published_at.isoformat()
        return self.published_raw or ""


@dataclass(frozen=True)
class CollectionWindow:
    """Half-open interval ``[start, end)`` in UTC."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class PendingStory:
    source: FeedSource
    item: CandidateItem
    position: int
    hydrated_text: Optional[str] = None


class Provenance(Enum):
    SUCCESS = "model"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class SummaryResult:
    abstract: str
    bullets: List[str]
    provenance: Provenance
    engine: Optional[str] = None
    translated_title: Optional[str] = None
    via: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "abstract": self.abstract,
            "bullets": list(self.bullets),
            "via": self.via or self.provenance.value,
            "engine": self.engine,
        }


@dataclass(frozen=True)
class NarrativeItem:
    feed: str
    title: str
    url: str
    published_at: str
    summary: SummaryResult
    position: int


@dataclass
class TimelineEntry:
    title: str
    summary: str
    date: str
    source: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "title": self.title,
            "summary": self.summary,
            "date": self.date,
            "source": self.source,
            "url": self.url,
        }


@dataclass
class BriefingDraft:
    synthesis: str
    analysis: str
    key_points: str
    watch_points: str
    curiosities: str
    positives: str
    timeline: List[TimelineEntry] = field(default_factory=list)
    word_count: int = 0
    reading_minutes: int = 0

    def sections(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in SECTION_NAMES}


@dataclass
class QAReport:
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.errors


class SynthesisProvenance(Enum):
    GENERATED = "generated"
    ACCEPTED_WITH_WARNINGS = "accepted_with_warnings"
    FALLBACK = "fallback"


@dataclass
class SynthesisOutcome:
    draft: BriefingDraft
    provenance: SynthesisProvenance
    attempts: int
    qa: QAReport
    warnings: List[str] = field(default_factory=list)


@dataclass
class EditionSource:
    feed: str
    items: List[NarrativeItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed": self.feed,
            "items": [
                {
                    "title": item.title,
                    "url": item.url,
                    "publishedAt": item.published_at,
                    "summary": item.summary.to_dict(),
                }
                for item in self.items
            ],
        }


@dataclass
class Edition:
    date: str
    title: str
    timezone: str
    briefing: BriefingDraft
    sources: List[EditionSource]
    generated_at: datetime
    qa_warnings: List[str] = field(default_factory=list)
    synthesis_provenance: SynthesisProvenance = SynthesisProvenance.GENERATED

    def frontmatter(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "title": self.title,
            "timezone": self.timezone,
            "sources": [source.to_dict() for source in self.sources],
            "generatedAt": self.generated_at.isoformat(),
            "readingMinutes": self.briefing.reading_minutes,
            "wordCount": self.briefing.word_count,
            "qaWarnings": list(self.qa_warnings),
            "synthesisProvenance": self.synthesis_provenance.value,
        }
