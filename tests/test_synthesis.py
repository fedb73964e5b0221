"""Briefing parsing, link repair, the quality-gated retry loop and the fallback briefing."""

from __future__ import annotations

import pytest

from conftest import ScriptedBackend, briefing_json, make_generator, make_narrative, small_quality
from rss_digest.models.content import SynthesisProvenance
from rss_digest.pipeline.quality_validator import QualityValidator
from rss_digest.services.ai_service import load_prompts
from rss_digest.services.synthesis_service import (
    FallbackSynthesizer,
    SynthesisService,
    build_briefing_prompt,
    compute_reading_minutes,
    ensure_markdown_links,
    parse_briefing_json,
)
from rss_digest.utils.config_loader import SectionThreshold
from rss_digest.utils.error_monitoring import GenerationParseFailure


ITEMS = [make_narrative(feed, n) for n, feed in enumerate(["Alpha", "Beta", "Gamma"])]


def _service(backend: ScriptedBackend, quality=None, attempts: int = 2) -> SynthesisService:
    return SynthesisService(
        make_generator(backend),
        load_prompts(),
        QualityValidator(quality or small_quality()),
        max_attempts=attempts,
    )


def test_parse_briefing_json_extracts_object_from_prose():
    draft = parse_briefing_json(briefing_json(key_points=["First point.", "Second point."]))
    assert draft.synthesis.startswith("Officials approved")
    assert draft.key_points == "First point.\n\nSecond point."
    assert draft.timeline[0].title == "Budget vote"


def test_parse_briefing_json_requires_synthesis_and_analysis():
    with pytest.raises(GenerationParseFailure):
        parse_briefing_json(briefing_json(analysis=""))
    with pytest.raises(GenerationParseFailure):
        parse_briefing_json("no json here")
    with pytest.raises(GenerationParseFailure):
        parse_briefing_json("{not: valid}")


def test_ensure_markdown_links_rewrites_known_titles_only():
    item = ITEMS[0]
    text = f"Readers noticed «{item.title}» (Alpha) and «Some unknown headline» (Beta)."
    repaired = ensure_markdown_links(text, ITEMS)
    assert f"[{item.title}]({item.url}) (Alpha)" in repaired
    assert "«Some unknown headline» (Beta)" in repaired


def test_reading_minutes_are_clamped():
    assert compute_reading_minutes(100, 55, 55, 60) == 55
    assert compute_reading_minutes(3080, 55, 55, 60) == 56
    assert compute_reading_minutes(10_000, 55, 55, 60) == 60
    assert compute_reading_minutes(0, 55, 1, 60) == 1


def test_reinforced_prompt_only_after_first_attempt():
    validator = QualityValidator(small_quality())
    prompts = load_prompts()
    first = build_briefing_prompt(prompts, ITEMS, validator, "English", "UTC", attempt=1)
    second = build_briefing_prompt(prompts, ITEMS, validator, "English", "UTC", attempt=2,
                                   previous_errors=["synthesis: 9 words, below the minimum of 50"])
    assert "PREVIOUS DRAFT WAS REJECTED" not in first
    assert "PREVIOUS DRAFT WAS REJECTED" in second
    assert "below the minimum of 50" in second
    assert "[1] Alpha: Story 0 from Alpha" in first


@pytest.mark.asyncio
async def test_first_draft_accepted():
    backend = ScriptedBackend(briefing=[briefing_json()])
    outcome = await _service(backend).synthesize(ITEMS)

    assert outcome.provenance is SynthesisProvenance.GENERATED
    assert outcome.attempts == 1
    assert outcome.qa.passed
    assert outcome.draft.word_count > 0
    assert outcome.draft.reading_minutes == 55


@pytest.mark.asyncio
async def test_rejected_draft_is_retried_then_accepted():
    backend = ScriptedBackend(briefing=[briefing_json(synthesis="Too short [↗ Alpha](https://alpha.example.com/story-0)."),
                                        briefing_json()])
    outcome = await _service(backend).synthesize(ITEMS)

    assert outcome.provenance is SynthesisProvenance.GENERATED
    assert outcome.attempts == 2
    assert "PREVIOUS DRAFT WAS REJECTED" in backend.prompts[1]


@pytest.mark.asyncio
async def test_persistent_violation_accepted_with_warnings_after_two_attempts():
    quality = small_quality()
    quality.sections["synthesis"] = SectionThreshold(min_words=50, max_words=400, min_paragraphs=1)
    backend = ScriptedBackend(briefing=[briefing_json(), briefing_json(), briefing_json()])

    outcome = await _service(backend, quality).synthesize(ITEMS)

    assert outcome.provenance is SynthesisProvenance.ACCEPTED_WITH_WARNINGS
    assert outcome.attempts == 2
    assert len(backend.prompts) == 2
    assert any(w.startswith("QA error: synthesis:") for w in outcome.warnings)
    assert outcome.draft.synthesis.startswith("Officials approved")


@pytest.mark.asyncio
async def test_unusable_responses_fall_back_to_theme_briefing():
    backend = ScriptedBackend(briefing=["not json", RuntimeError("server down")])
    outcome = await _service(backend).synthesize(ITEMS)

    assert outcome.provenance is SynthesisProvenance.FALLBACK
    assert outcome.attempts == 2
    assert outcome.warnings[0].startswith("Synthesis fallback used")
    assert all(outcome.draft.sections().values())
    assert outcome.draft.timeline


def test_fallback_analysis_uses_themes_when_corpus_is_large_enough():
    items = [make_narrative(feed, n) for n, feed in enumerate(["A", "B", "C", "D", "E", "F", "G"])]
    draft = FallbackSynthesizer().build(items)
    assert "Developments around" in draft.analysis
    assert "[↗ " in draft.synthesis
    assert draft.key_points.count("\n\n") <= 6
    assert draft.watch_points.startswith("- ")

    small = FallbackSynthesizer().build(items[:3])
    assert "matters because" in small.analysis
