"""Quality gate checks on briefing drafts."""

from __future__ import annotations

from conftest import make_narrative, small_quality
from rss_digest.models.content import BriefingDraft
from rss_digest.pipeline.quality_validator import (
    QualityValidator,
    detect_duplicate_sentences,
    extract_citations,
    jaccard,
)
from rss_digest.utils.config_loader import SectionThreshold


ITEMS = [make_narrative("Alpha", 0), make_narrative("Beta", 1)]


def _draft(**overrides) -> BriefingDraft:
    base = dict(
        synthesis="Officials approved the regional budget on Monday [↗ Alpha](https://alpha.example/1).",
        analysis="Markets reacted calmly while analysts questioned long-term funding [↗ Beta](https://beta.example/2).",
        key_points="Budget passed with a narrow majority [↗ Alpha](https://alpha.example/1).",
        watch_points="Appeal hearing expected next month in court [↗ Beta](https://beta.example/2).",
        curiosities="Nobody explained why the vote happened overnight [↗ Alpha](https://alpha.example/1).",
        positives="Schools receive additional funding from the plan [↗ Beta](https://beta.example/2).",
    )
    base.update(overrides)
    return BriefingDraft(**base)


def test_extract_citations_reads_source_labels():
    text = "A [↗ Le Monde](https://lemonde.fr/a) and [↗ BBC](http://bbc.co.uk/b) but not [BBC](https://x)."
    assert extract_citations(text) == ["Le Monde", "BBC"]


def test_jaccard_bounds():
    assert jaccard("alpha beta gamma", "alpha beta gamma") == 1.0
    assert jaccard("alpha beta", "delta omega") == 0.0
    assert jaccard("", "") == 0.0


def test_duplicate_sentences_are_normalised():
    text = "The council met today. Nothing else happened. The Council met today!"
    assert detect_duplicate_sentences(text) == ["the council met today"]
    assert detect_duplicate_sentences("Short. Short.", min_chars=16) == []


def test_clean_draft_passes():
    report = QualityValidator(small_quality()).validate(_draft(), ITEMS)
    assert report.passed, report.errors
    assert report.metrics["cited_sources"] == 2


def test_short_section_is_an_error_and_long_section_a_warning():
    quality = small_quality()
    quality.sections["synthesis"] = SectionThreshold(min_words=50, max_words=100, min_paragraphs=1)
    quality.sections["positives"] = SectionThreshold(min_words=1, max_words=3, min_paragraphs=1)

    report = QualityValidator(quality).validate(_draft(), ITEMS)

    assert any(e.startswith("synthesis:") and "below the minimum" in e for e in report.errors)
    assert any(w.startswith("positives:") and "above the maximum" in w for w in report.warnings)


def test_paragraph_minimum_and_citation_density():
    quality = small_quality()
    quality.sections["analysis"] = SectionThreshold(min_words=1, max_words=400, min_paragraphs=3)
    uncited = "First paragraph without sources here.\n\nSecond one also lacks sources entirely."

    report = QualityValidator(quality).validate(_draft(analysis=uncited), ITEMS)

    assert any("analysis: 2 paragraphs" in e for e in report.errors)
    assert any("analysis: only 0/2 paragraphs carry a citation" in e for e in report.errors)


def test_overlapping_synthesis_and_analysis_is_rejected():
    same = "Officials approved the regional budget on Monday [↗ Alpha](https://alpha.example/1)."
    report = QualityValidator(small_quality()).validate(_draft(synthesis=same, analysis=same), ITEMS)
    assert any(e.startswith("overlap:") for e in report.errors)


def test_duplicate_sentence_inside_section_is_rejected():
    repeated = (
        "Officials approved the regional budget on Monday [↗ Alpha](https://alpha.example/1). "
        "Officials approved the regional budget on Monday [↗ Alpha](https://alpha.example/1)."
    )
    report = QualityValidator(small_quality()).validate(_draft(key_points=repeated), ITEMS)
    assert any(e.startswith("key_points:") and "duplicated" in e for e in report.errors)


def test_too_few_distinct_cited_sources():
    quality = small_quality()
    quality.min_cited_sources = 2
    only_alpha = {
        name: f"Paragraph about the {name} topic today [↗ Alpha](https://alpha.example/1)."
        for name in ("synthesis", "analysis", "key_points", "watch_points", "curiosities", "positives")
    }
    only_alpha["analysis"] = "Wholly different vocabulary describing funding mechanisms [↗ Alpha](https://alpha.example/2)."
    report = QualityValidator(quality).validate(_draft(**only_alpha), ITEMS)
    assert any(e.startswith("citations:") for e in report.errors)
