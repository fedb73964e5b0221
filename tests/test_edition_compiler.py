"""Edition rendering, persistence and re-issue of a previous edition."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_narrative
from rss_digest.models.content import (
    BriefingDraft,
    QAReport,
    SynthesisOutcome,
    SynthesisProvenance,
    TimelineEntry,
)
from rss_digest.pipeline.edition_compiler import (
    CompilationError,
    EditionCompiler,
    build_edition_title,
    group_sources,
    split_frontmatter,
)


GENERATED_AT = datetime(2026, 10, 18, 6, 30, tzinfo=timezone.utc)


def _outcome(warnings=()) -> SynthesisOutcome:
    draft = BriefingDraft(
        synthesis="Officials approved the budget & the \"plan\" [↗ Alpha](https://alpha.example.com/story-0).",
        analysis="Markets reacted calmly.",
        key_points="- Budget passed.",
        watch_points="",
        curiosities="Nobody knows why.",
        positives="Schools gain funding.",
        timeline=[TimelineEntry("Budget vote", "Passed", "2026-10-17", "Alpha", "https://alpha.example.com/story-0")],
        word_count=20,
        reading_minutes=55,
    )
    return SynthesisOutcome(draft, SynthesisProvenance.ACCEPTED_WITH_WARNINGS, 2, QAReport(), list(warnings))


def test_edition_title_format():
    assert build_edition_title("2026-10-18") == "Daily Brief — 18 Oct 2026"
    assert build_edition_title("2026-03-05") == "Daily Brief — 05 Mar 2026"


def test_sources_grouped_by_feed_in_narrative_order():
    items = [make_narrative("Beta", 0), make_narrative("Alpha", 1), make_narrative("Beta", 2)]
    groups = group_sources(items)
    assert [g.feed for g in groups] == ["Beta", "Alpha"]
    assert [i.position for i in groups[0].items] == [0, 2]


def test_write_produces_frontmatter_and_markdown_body(tmp_path):
    compiler = EditionCompiler(tmp_path)
    narrative = [make_narrative("Alpha", 0), make_narrative("Beta", 1)]
    edition = compiler.compile(
        "2026-10-18", "Europe/Paris", _outcome(["QA error: analysis: 3 words, below the minimum of 5"]),
        narrative, qa_flags=["Only 2 distinct feeds contributed stories (minimum 6)."], generated_at=GENERATED_AT,
    )

    path = compiler.write(edition)

    assert path == tmp_path / "2026-10-18.md"
    frontmatter, body = compiler.load(path)
    assert list(frontmatter) == [
        "date", "title", "timezone", "sources", "generatedAt", "readingMinutes",
        "wordCount", "qaWarnings", "synthesisProvenance",
    ]
    assert frontmatter["date"] == "2026-10-18"
    assert frontmatter["synthesisProvenance"] == "accepted_with_warnings"
    assert frontmatter["qaWarnings"][0].startswith("Only 2 distinct feeds")
    assert frontmatter["sources"][0]["items"][0]["summary"]["bullets"][0] == "Measure 0 takes effect next month."

    assert body.startswith("# Daily Brief — 18 Oct 2026")
    assert "## Synthesis" in body
    assert "& the \"plan\"" in body
    assert "## Watch Points" not in body
    assert "- **2026-10-17** [Budget vote](https://alpha.example.com/story-0) (Alpha): Passed" in body


def test_find_fallback_edition_skips_unreadable_files(tmp_path):
    compiler = EditionCompiler(tmp_path)
    good = compiler.compile("2026-10-15", "UTC", _outcome(), [make_narrative("Alpha", 0)], generated_at=GENERATED_AT)
    compiler.write(good)
    (tmp_path / "2026-10-17.md").write_text("no frontmatter here", encoding="utf-8")

    assert compiler.find_fallback_edition("2026-10-18", lookback_days=7) == tmp_path / "2026-10-15.md"
    assert compiler.find_fallback_edition("2026-10-18", lookback_days=2) is None


def test_reissue_refreshes_date_title_and_adds_warning(tmp_path):
    compiler = EditionCompiler(tmp_path)
    source = compiler.write(
        compiler.compile("2026-10-16", "UTC", _outcome(), [make_narrative("Alpha", 0)], generated_at=GENERATED_AT)
    )

    path = compiler.reissue(source, "2026-10-18", generated_at=GENERATED_AT)

    frontmatter, body = compiler.load(path)
    assert path.name == "2026-10-18.md"
    assert frontmatter["date"] == "2026-10-18"
    assert frontmatter["title"] == "Daily Brief — 18 Oct 2026"
    assert frontmatter["generatedAt"] == GENERATED_AT.isoformat()
    assert frontmatter["qaWarnings"][-1] == "Re-issued from the 2026-10-16 edition: not enough fresh stories."
    assert frontmatter["sources"] == compiler.load(source)[0]["sources"]
    assert body.startswith("# Daily Brief — 18 Oct 2026")


def test_split_frontmatter_rejects_plain_markdown():
    with pytest.raises(CompilationError):
        split_frontmatter("# Just a heading\n")
    with pytest.raises(CompilationError):
        split_frontmatter("---\n- a\n- b\n---\nbody")
