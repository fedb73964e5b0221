"""
Logging for edition runs.

Console output is colour-coded and tagged with the edition being built;
file output goes to a daily rotating log plus ``errors.log``. With
structured logging on, every record becomes one JSON object carrying the
``extra_data`` attached by the stage helpers below.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


STAGE_LOGGERS = (
    'rss_digest.services.rss',
    'rss_digest.services.content_extraction',
    'rss_digest.services.summarization_service',
    'rss_digest.services.synthesis_service',
    'rss_digest.pipeline.content_aggregator',
    'rss_digest.pipeline.edition_compiler',
)

THIRD_PARTY_LOGGERS = ('aiohttp', 'urllib3', 'httpx', 'httpcore', 'google_genai', 'charset_normalizer')


class EditionContextFilter(logging.Filter):
    """Stamps each record with the edition date of the current run ('-' before it is known)."""

    edition_date = "-"

    def filter(self, record):
        record.edition_date = EditionContextFilter.edition_date
        return True


def bind_edition_date(edition_date: str) -> None:
    EditionContextFilter.edition_date = edition_date


def _short_name(name: str) -> str:
    return name[len("rss_digest."):] if name.startswith("rss_digest.") else name


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        entry = {
            'ts': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'edition': getattr(record, 'edition_date', '-'),
            'message': record.getMessage(),
            'where': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        extra = getattr(record, 'extra_data', None)
        if extra:
            entry['data'] = extra
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        color, reset = (self.COLORS.get(record.levelname, ''), self.RESET) if self.use_color else ('', '')
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname[0]} "
            f"[{getattr(record, 'edition_date', '-')}] {_short_name(record.name):<34} "
            f"{record.getMessage()}{reset}"
        )
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = True,
    enable_structured_logging: bool = False
) -> None:
    """
    Configure the root logger for one CLI invocation.

    Args:
        log_level: Minimum console level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for ``rss_digest.log`` and ``errors.log`` (default ``./logs``)
        enable_file_logging: Also write the rotating and error log files
        enable_structured_logging: Emit JSON lines instead of the coloured console format
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    context = EditionContextFilter()

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if enable_file_logging else level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.addFilter(context)
    console.setFormatter(
        StructuredFormatter() if enable_structured_logging
        else ColoredConsoleFormatter(use_color=sys.stdout.isatty())
    )
    root.addHandler(console)

    if enable_file_logging:
        log_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        log_path.mkdir(parents=True, exist_ok=True)
        plain = logging.Formatter('%(asctime)s | %(levelname)-8s | %(edition_date)s | %(name)s | %(message)s')

        daily = logging.handlers.TimedRotatingFileHandler(
            log_path / "rss_digest.log", when='midnight', backupCount=14, encoding='utf-8'
        )
        daily.setLevel(logging.DEBUG)
        daily.addFilter(context)
        daily.setFormatter(StructuredFormatter() if enable_structured_logging else plain)
        root.addHandler(daily)

        errors = logging.FileHandler(log_path / "errors.log", encoding='utf-8')
        errors.setLevel(logging.ERROR)
        errors.addFilter(context)
        errors.setFormatter(logging.Formatter(
            '%(asctime)s | %(edition_date)s | %(name)s %(funcName)s:%(lineno)d | %(message)s'
        ))
        root.addHandler(errors)

    for name in STAGE_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)


class PerformanceTracker:
    """Times one pipeline stage; ``duration_ms`` is set on exit."""

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.duration_ms: float = 0.0
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.debug(f"⏱️ {self.operation_name} started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            self.duration_ms = (time.perf_counter() - self._started) * 1000
            if exc_type:
                self.logger.error(f"💥 {self.operation_name} failed after {self.duration_ms:.0f}ms: {exc_val}")
            else:
                self.logger.debug(f"✅ {self.operation_name} done in {self.duration_ms:.0f}ms")
        return False


def log_pipeline_metrics(logger: logging.Logger, stage: str, input_count: int, output_count: int,
                         duration_ms: float, **extra_data) -> None:
    """One line per stage: items in, items out, elapsed time; counters go to ``extra_data``."""
    data = {'stage': stage, 'in': input_count, 'out': output_count, 'duration_ms': round(duration_ms, 1)}
    data.update(extra_data)
    details = " ".join(f"{k}={v}" for k, v in extra_data.items())
    logger.info(
        f"📊 {stage}: {input_count} → {output_count} in {duration_ms:.0f}ms" + (f" ({details})" if details else ""),
        extra={'extra_data': data},
    )


def log_ai_interaction(logger: logging.Logger, purpose: str, model: str, response_chars: int,
                       response_time_ms: float, success: bool, **extra_data) -> None:
    """One text-generation call: purpose (summary or briefing), model, response size and latency."""
    data = {
        'purpose': purpose,
        'model': model,
        'response_chars': response_chars,
        'response_time_ms': round(response_time_ms, 1),
        'success': success,
    }
    data.update(extra_data)
    level = logging.DEBUG if success else logging.WARNING
    suffix = f" error={extra_data['error']}" if 'error' in extra_data else ""
    logger.log(
        level,
        f"{'✅' if success else '❌'} {purpose} via {model}: {response_chars} chars in {response_time_ms:.0f}ms{suffix}",
        extra={'extra_data': data},
    )
