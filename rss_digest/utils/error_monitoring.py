import json
import logging
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


@dataclass
class ErrorContext:
    """One absorbed failure: what broke, in which stage, and what the run did instead."""
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    service: str
    operation: str
    severity: str
    recovery_action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorSeverity(Enum):
    """How much an absorbed failure degraded the edition."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CriticalError(Exception):
    """Ends the run: no edition is written and the CLI exits non-zero."""
    pass


class NonCriticalError(Exception):
    """Absorbed at the stage that raised it; the stage substitutes a fallback value."""
    pass


# Non-fatal: absorbed at the stage boundary that produced them.

class FeedUnavailable(NonCriticalError):
    """Feed could not be fetched or parsed."""

    def __init__(self, feed: str, reason: str):
        super().__init__(f"{feed}: {reason}")
        self.feed = feed
        self.reason = reason


class HydrationFailure(NonCriticalError):
    """Article page could not be fetched; the embedded text is kept."""


class SummarizationFailure(NonCriticalError):
    """Every summary attempt failed; a fallback summary was produced."""


class GenerationTimeout(NonCriticalError):
    """Text-generation call exceeded its timeout."""


class GenerationRefusal(NonCriticalError):
    """Text-generation output matched refusal phrasing."""


class GenerationParseFailure(NonCriticalError):
    """Text-generation output could not be decomposed into the requested shape."""


# Fatal: propagate to the entry point and end the run with a non-zero status.

class InsufficientContent(CriticalError):
    """Too few fresh stories and no usable prior edition to reissue."""

    def __init__(self, date: str, found: int, required: int, lookback_days: int):
        super().__init__(
            f"Insufficient content for {date}: {found} fresh stories "
            f"(minimum {required}) and no edition in the previous {lookback_days} days"
        )
        self.date = date
        self.found = found
        self.required = required
        self.lookback_days = lookback_days


class ConfigurationError(CriticalError):
    """Operator configuration is missing or invalid."""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        body = "\n".join(f"- {issue}" for issue in self.issues)
        super().__init__(f"Configuration is invalid:\n{body}")


class ErrorHandler:
    """
    Records non-fatal errors absorbed by pipeline stages.

    Stages never raise these past their boundary; they report them here so
    the end-of-run summary shows what degraded and where.
    """

    def __init__(self, history_size: int = 200) -> None:
        self.error_history: Deque[ErrorContext] = deque(maxlen=history_size)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.logger = logging.getLogger(__name__)

    def handle_error(
        self,
        error: Exception,
        service: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        severity = self.classify_severity(error)
        error_context = ErrorContext(
            error_type=error_type,
            error_message=str(error),
            stack_trace=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            timestamp=datetime.now(),
            service=service,
            operation=operation,
            severity=severity.value,
            recovery_action=self.get_recovery_suggestion(error),
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1

        log = self.logger.error if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH) else self.logger.warning
        log(json.dumps({
            'event': 'error',
            'service': service,
            'operation': operation,
            'severity': severity.value,
            'error_type': error_type,
            'error_message': error_context.error_message,
        }, ensure_ascii=False))
        return error_context

    def classify_severity(self, error: Exception) -> ErrorSeverity:
        if isinstance(error, CriticalError):
            return ErrorSeverity.CRITICAL
        if isinstance(error, (GenerationTimeout, GenerationRefusal, GenerationParseFailure, SummarizationFailure)):
            return ErrorSeverity.MEDIUM
        if isinstance(error, NonCriticalError):
            return ErrorSeverity.LOW
        return ErrorSeverity.HIGH

    def get_recovery_suggestion(self, error: Exception) -> Optional[str]:
        if isinstance(error, FeedUnavailable):
            return "Check the feed URL; the feed contributes no stories this run."
        if isinstance(error, HydrationFailure):
            return "Embedded feed content was used instead of the article page."
        if isinstance(error, GenerationTimeout):
            return "Raise generation.timeout_ms or check the text-generation server load."
        if isinstance(error, ConfigurationError):
            return "Fix config.yml / feeds.yml and rerun with --validate-config."
        return None

    def get_error_summary(self) -> Dict[str, Any]:
        by_service: Dict[str, int] = defaultdict(int)
        for ctx in self.error_history:
            by_service[ctx.service] += 1
        return {
            'total_errors': sum(self.error_counts.values()),
            'by_type': dict(self.error_counts),
            'by_service': dict(by_service),
        }

    def log_summary(self) -> None:
        summary = self.get_error_summary()
        if not summary['total_errors']:
            self.logger.info("No degraded operations this run")
            return
        self.logger.warning(
            f"{summary['total_errors']} degraded operations: "
            + ", ".join(f"{k}={v}" for k, v in sorted(summary['by_type'].items())),
            extra={'extra_data': summary},
        )
