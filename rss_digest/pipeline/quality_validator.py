"""
Quality gate for briefing drafts.

Checks each section's length, paragraph count, citation density and
duplicate sentences, the spread of cited sources, and vocabulary overlap
between the synthesis and analysis sections. Violations that block
acceptance go to ``errors``; the rest go to ``warnings``.
"""

import logging
import re
from typing import List, Sequence, Set

from rss_digest.models.content import BriefingDraft, NarrativeItem, QAReport
from rss_digest.utils.config_loader import QualityThresholds
from rss_digest.utils.text import count_words, split_paragraphs, split_sentences


CITATION = re.compile(r"\[↗\s+([^\]]{1,60})\]\(https?:[^)]+\)")
_TOKEN = re.compile(r"[^\W\d_]{3,}")
_NON_WORD = re.compile(r"[^\w'\-]+")


def extract_citations(text: str) -> List[str]:
    """Source labels of every inline ``[↗ Source](url)`` citation."""
    return [m.strip() for m in CITATION.findall(text or "")]


def tokenize(text: str) -> Set[str]:
    return set(_TOKEN.findall((text or "").lower()))


def jaccard(a: str, b: str) -> float:
    left, right = tokenize(a), tokenize(b)
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)


def normalise_sentence(sentence: str) -> str:
    return re.sub(r"\s+", " ", _NON_WORD.sub(" ", sentence.replace("_", " "))).strip().lower()


def detect_duplicate_sentences(text: str, min_chars: int = 16) -> List[str]:
    """Sentences (normalised) that appear more than once."""
    seen: Set[str] = set()
    duplicates: List[str] = []
    for sentence in split_sentences(text):
        key = normalise_sentence(sentence)
        if len(key) < min_chars:
            continue
        if key in seen and key not in duplicates:
            duplicates.append(key)
        seen.add(key)
    return duplicates


class QualityValidator:
    def __init__(self, thresholds: QualityThresholds) -> None:
        self.thresholds = thresholds
        self.logger = logging.getLogger(__name__)

    def validate(self, draft: BriefingDraft, items: Sequence[NarrativeItem]) -> QAReport:
        report = QAReport()
        all_citations: List[str] = []
        total_words = 0

        for name, text in draft.sections().items():
            threshold = self.thresholds.sections.get(name)
            words = count_words(text)
            total_words += words
            paragraphs = split_paragraphs(text)
            report.metrics[f"{name}_words"] = words
            report.metrics[f"{name}_paragraphs"] = len(paragraphs)

            if threshold is not None:
                if words < threshold.min_words:
                    report.errors.append(f"{name}: {words} words, below the minimum of {threshold.min_words}")
                elif words > threshold.max_words:
                    report.warnings.append(f"{name}: {words} words, above the maximum of {threshold.max_words}")
                if len(paragraphs) < threshold.min_paragraphs:
                    report.errors.append(
                        f"{name}: {len(paragraphs)} paragraphs, below the minimum of {threshold.min_paragraphs}"
                    )

            if paragraphs:
                cited = sum(1 for p in paragraphs if CITATION.search(p))
                density = cited / len(paragraphs)
                report.metrics[f"{name}_citation_density"] = round(density, 2)
                if density < self.thresholds.min_citations_per_paragraph:
                    report.errors.append(
                        f"{name}: only {cited}/{len(paragraphs)} paragraphs carry a citation "
                        f"(minimum density {self.thresholds.min_citations_per_paragraph:.2f})"
                    )

            duplicates = detect_duplicate_sentences(text, self.thresholds.duplicate_min_chars)
            if duplicates:
                report.errors.append(f"{name}: {len(duplicates)} duplicated sentence(s), e.g. \"{duplicates[0][:80]}\"")

            all_citations.extend(extract_citations(text))

        distinct_sources = {c.lower() for c in all_citations}
        distinct_feeds = {item.feed for item in items}
        required_sources = min(self.thresholds.min_cited_sources, max(1, len(distinct_feeds)))
        report.metrics["cited_sources"] = len(distinct_sources)
        if len(distinct_sources) < required_sources:
            report.errors.append(
                f"citations: {len(distinct_sources)} distinct sources cited, at least {required_sources} required"
            )

        overlap = jaccard(draft.synthesis, draft.analysis)
        report.metrics["synthesis_analysis_overlap"] = round(overlap, 3)
        if overlap >= self.thresholds.max_section_overlap:
            report.errors.append(
                f"overlap: synthesis and analysis share {overlap:.0%} of their vocabulary "
                f"(limit {self.thresholds.max_section_overlap:.0%})"
            )

        report.metrics["total_words"] = total_words
        if report.errors:
            self.logger.warning(f"QA rejected draft: {len(report.errors)} errors, {len(report.warnings)} warnings")
        else:
            self.logger.info(f"QA passed: {total_words} words, {len(report.warnings)} warnings")
        return report
