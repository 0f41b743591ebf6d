"""
Structured logging system for the transaction harness.

Provides centralized logging with console and file output, log levels,
and metrics tracking for transaction boundaries and scenario outcomes.
"""

import copy
import logging
import sys
import threading
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for boundaries, errors and scenario outcomes.
    """

    def __init__(
        self,
        name: str = "transactional",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
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
        self.logger.handlers.clear()  # Remove existing handlers
        self.logger.propagate = False

        # Boundaries complete on worker threads
        self._metrics_lock = threading.Lock()
        self.metrics = {
            "boundaries_begun": 0,
            "boundaries_committed": 0,
            "boundaries_rolled_back": 0,
            "errors_by_type": {},
            "scenario_outcomes": {},
        }

        # Console handler
        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(threadName)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"transactional_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

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
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_boundary_begun(self):
        """Increment the counter of physical boundaries and savepoints opened."""
        with self._metrics_lock:
            self.metrics["boundaries_begun"] += 1

    def record_boundary_completed(self, outcome: str):
        """Record a boundary closing with `committed` or `rolled_back`."""
        with self._metrics_lock:
            if outcome == "committed":
                self.metrics["boundaries_committed"] += 1
            else:
                self.metrics["boundaries_rolled_back"] += 1

    def record_error(self, error_type: str):
        """Record a failure surfaced to the orchestration layer."""
        with self._metrics_lock:
            if error_type not in self.metrics["errors_by_type"]:
                self.metrics["errors_by_type"][error_type] = 0
            self.metrics["errors_by_type"][error_type] += 1

    def record_scenario(self, scenario: str, outcome: str):
        """Record the outcome of a scenario run."""
        with self._metrics_lock:
            self.metrics["scenario_outcomes"][scenario] = outcome

    def get_metrics(self) -> dict:
        """Return current metrics."""
        with self._metrics_lock:
            metrics_copy = copy.deepcopy(self.metrics)

        completed = metrics_copy["boundaries_committed"] + metrics_copy["boundaries_rolled_back"]
        metrics_copy["commit_rate"] = 0.0
        if completed > 0:
            metrics_copy["commit_rate"] = round(
                metrics_copy["boundaries_committed"] / completed, 3
            )

        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Transaction Session Metrics ===")
        self.info(f"Boundaries begun: {metrics['boundaries_begun']}")
        self.info(
            f"Committed: {metrics['boundaries_committed']} "
            f"Rolled back: {metrics['boundaries_rolled_back']} "
            f"({metrics['commit_rate'] * 100:.1f}% committed)"
        )

        if metrics["scenario_outcomes"]:
            self.info("Scenario outcomes:")
            for scenario, outcome in metrics["scenario_outcomes"].items():
                self.info(f"  {scenario}: {outcome}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "transactional",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
