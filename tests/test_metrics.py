"""Summary outcome counters and their end-of-run file."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from rss_digest.utils.metrics import SummaryMetrics


def test_format_line_lists_known_outcomes_first():
    metrics = SummaryMetrics()
    metrics.increment("zeta_extra")
    metrics.increment("parse_fail", 2)
    metrics.increment("success", 5)

    assert metrics.format_line() == "success=5 parse_fail=2 zeta_extra=1"
    assert metrics.get("refusal") == 0


def test_flush_writes_payload_once(tmp_path):
    metrics = SummaryMetrics()
    metrics.increment("success", 3)
    path = tmp_path / "cache" / "summary-metrics.json"
    at = datetime(2026, 10, 18, 6, 30, tzinfo=timezone.utc)

    payload = metrics.flush(path, "2026-10-18", "fake/model", generated_at=at)

    assert json.loads(path.read_text(encoding="utf-8")) == payload
    assert payload == {
        "date": "2026-10-18",
        "generatedAt": "2026-10-18T06:30:00+00:00",
        "model": "fake/model",
        "metrics": {"success": 3},
    }
    with pytest.raises(RuntimeError):
        metrics.flush(path, "2026-10-18", "fake/model")
