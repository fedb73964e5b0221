"""
Theme scoring for the deterministic fallback briefing.

A scorer ranks the terms of a corpus of summarized stories. The default
scorer rewards terms that appear across many distinct feeds.
"""

import logging
import math
import re
import unicodedata
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set

from rss_digest.models.content import NarrativeItem


STOPWORDS = {
    # English
    "about", "after", "again", "against", "also", "among", "been", "before", "being", "between",
    "both", "could", "does", "during", "each", "from", "have", "having", "into", "itself", "just",
    "more", "most", "much", "must", "only", "other", "over", "same", "says", "said", "should",
    "since", "some", "such", "than", "that", "their", "them", "then", "there", "these", "they",
    "this", "those", "through", "under", "until", "very", "were", "what", "when", "where", "which",
    "while", "will", "with", "would", "your", "year", "years", "today", "week", "news", "article",
    "detail", "details", "provided", "source", "summary", "automatic", "unavailable", "original",
    # French
    "avec", "dans", "pour", "plus", "sans", "sont", "leur", "leurs", "cette", "mais", "comme",
    "elle", "elles", "nous", "vous", "tout", "tous", "toute", "toutes", "fait", "font", "etre",
    "avoir", "selon", "apres", "avant", "aussi", "encore", "depuis", "entre", "chez", "dont",
}

_TOKEN = re.compile(r"[^\W\d_]{4,}")


@dataclass
class Theme:
    term: str
    score: float
    document_frequency: int
    feeds: Set[str] = field(default_factory=set)
    items: List[NarrativeItem] = field(default_factory=list)


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def tokenize(text: str) -> List[str]:
    tokens = _TOKEN.findall(strip_accents(text or "").lower())
    return [t for t in tokens if t not in STOPWORDS]


def item_corpus_text(item: NarrativeItem) -> str:
    return " ".join([item.title, item.summary.abstract, *item.summary.bullets])


class ThemeScorer(ABC):
    """score(corpus) -> ranked themes."""

    @abstractmethod
    def score(self, corpus: Sequence[NarrativeItem], limit: int = 4) -> List[Theme]:
        ...


class SourceDiversityThemeScorer(ThemeScorer):
    """
    Scores each term as ``idf * df * log(1 + distinct feeds)``, where
    ``idf = log(1 + N / (1 + df))``.

    Terms sharing a five-character prefix with an already selected theme
    are skipped so the top themes do not overlap.
    """

    def __init__(self, prefix_length: int = 5) -> None:
        self.prefix_length = prefix_length
        self.logger = logging.getLogger(__name__)

    def score(self, corpus: Sequence[NarrativeItem], limit: int = 4) -> List[Theme]:
        if not corpus or limit <= 0:
            return []

        doc_freq: Dict[str, int] = defaultdict(int)
        feeds_by_term: Dict[str, Set[str]] = defaultdict(set)
        items_by_term: Dict[str, List[NarrativeItem]] = defaultdict(list)
        for item in corpus:
            for term in set(tokenize(item_corpus_text(item))):
                doc_freq[term] += 1
                feeds_by_term[term].add(item.feed)
                items_by_term[term].append(item)

        total = len(corpus)
        ranked: List[Theme] = []
        for term, df in doc_freq.items():
            idf = math.log(1 + total / (1 + df))
            diversity = math.log(1 + len(feeds_by_term[term]))
            ranked.append(Theme(
                term=term,
                score=idf * df * diversity,
                document_frequency=df,
                feeds=feeds_by_term[term],
                items=items_by_term[term],
            ))
        # Ties broken alphabetically so output is stable
        ranked.sort(key=lambda t: (-t.score, t.term))

        selected: List[Theme] = []
        for theme in ranked:
            if len(selected) >= limit:
                break
            prefix = theme.term[:self.prefix_length]
            if any(s.term[:self.prefix_length] == prefix for s in selected):
                continue
            selected.append(theme)

        self.logger.debug(f"Themes: {[t.term for t in selected]}")
        return selected
