import json
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from rss_digest.utils.fileio import atomic_write_text


SUMMARY_OUTCOMES = (
    "success",
    "success_after_retry",
    "parse_fail",
    "request_error",
    "refusal_fallback",
    "exhausted_fallback",
)


class SummaryMetrics:
    """
    Outcome counters for one pipeline run.

    Created when the run starts, handed to the stages that count outcomes,
    and flushed once when the run ends. All mutation is increment-by-key.
    """

    def __init__(self) -> None:
        self._counts: Counter = Counter()
        self._flushed = False
        self.logger = logging.getLogger(__name__)

    def increment(self, key: str, amount: int = 1) -> None:
        self._counts[key] += amount

    def get(self, key: str) -> int:
        return self._counts.get(key, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)

    def format_line(self) -> str:
        """``k=v`` pairs, known outcomes first, then any extra keys sorted."""
        parts = [f"{k}={self._counts[k]}" for k in SUMMARY_OUTCOMES if self._counts.get(k)]
        parts.extend(
            f"{k}={self._counts[k]}"
            for k in sorted(self._counts)
            if k not in SUMMARY_OUTCOMES and self._counts[k]
        )
        return " ".join(parts)

    def flush(self, path: Path, date: str, model: str, generated_at: Optional[datetime] = None) -> Dict[str, object]:
        if self._flushed:
            raise RuntimeError("summary metrics already flushed for this run")
        payload = {
            "date": date,
            "generatedAt": (generated_at or datetime.now(timezone.utc)).isoformat(),
            "model": model,
            "metrics": self.snapshot(),
        }
        atomic_write_text(Path(path), json.dumps(payload, indent=2) + "\n")
        self._flushed = True
        line = self.format_line()
        if line:
            self.logger.info(f"summary-metrics {line}", extra={'extra_data': payload})
        return payload
