"""
Structured logging for the matching engine.

Wraps the standard logging module with console and file outputs and keeps
counters that describe how matching runs went (matches created, skipped
candidates, storage failures, status transitions, ledger notifications).
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for monitoring matching runs.
    """

    def __init__(
        self,
        name: str = "organmatch",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        self.metrics = self._empty_metrics()

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"organmatch_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            "candidates_scored": 0,
            "matches_created": 0,
            "matches_skipped": {},
            "persistence_failures": 0,
            "transitions": {},
            "events_emitted": 0,
            "events_failed": 0,
        }

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_candidate_scored(self):
        self.metrics["candidates_scored"] += 1

    def record_match_created(self):
        self.metrics["matches_created"] += 1

    def record_match_skipped(self, reason: str):
        """Count a candidate that did not become a match, keyed by reason."""
        skipped = self.metrics["matches_skipped"]
        skipped[reason] = skipped.get(reason, 0) + 1

    def record_persistence_failure(self):
        self.metrics["persistence_failures"] += 1

    def record_transition(self, status: str):
        """Count a successful match status change, keyed by target status."""
        transitions = self.metrics["transitions"]
        transitions[status] = transitions.get(status, 0) + 1

    def record_event(self, delivered: bool):
        if delivered:
            self.metrics["events_emitted"] += 1
        else:
            self.metrics["events_failed"] += 1

    def get_metrics(self) -> dict:
        """Return current metrics, including the share of scored candidates that became matches."""
        metrics_copy = dict(self.metrics)
        scored = metrics_copy["candidates_scored"]
        metrics_copy["creation_rate"] = (
            round(metrics_copy["matches_created"] / scored, 3) if scored > 0 else 0.0
        )
        return metrics_copy

    def log_metrics_summary(self):
        metrics = self.get_metrics()

        self.info("=== Matching Session Metrics ===")
        self.info(f"Candidates scored: {metrics['candidates_scored']}")
        self.info(
            f"Matches created: {metrics['matches_created']} "
            f"({metrics['creation_rate'] * 100:.1f}% of scored)"
        )
        self.info(f"Persistence failures: {metrics['persistence_failures']}")
        self.info(f"Ledger events: {metrics['events_emitted']} sent, {metrics['events_failed']} failed")

        if metrics["matches_skipped"]:
            self.info("Skipped candidates:")
            for reason, count in metrics["matches_skipped"].items():
                self.info(f"  {reason}: {count}")

        if metrics["transitions"]:
            self.info("Status transitions:")
            for status, count in metrics["transitions"].items():
                self.info(f"  {status}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "organmatch",
    level: Optional[str] = None,
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Level and file output default to the environment settings when not
    passed explicitly.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        from .config import load_settings

        settings = load_settings()
        kwargs.setdefault("enable_file", settings.log_to_file)
        kwargs.setdefault("log_dir", settings.log_dir)
        _global_logger = StructuredLogger(name=name, level=level or settings.log_level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
