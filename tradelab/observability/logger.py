"""
Structured logging for the backtest and search core.
Supports JSON and text formats on a stdout handler.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8} {record.name}: {record.getMessage()}"

        if hasattr(record, "extra_fields") and record.extra_fields:
            extras = " | ".join(f"{k}={v}" for k, v in record.extra_fields.items())
            base = f"{base} | {extras}"

        if record.exc_info:
            base = f"{base}\n{self.formatException(record.exc_info)}"

        return base


class StructuredLogger:
    """
    Wrapper around standard logger with structured logging support.
    """

    def __init__(self, name: str, logger: logging.Logger):
        self._name = name
        self._logger = logger

    def _log(self, level: int, msg: str, **kwargs) -> None:
        """Log with optional extra fields."""
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            self._name, level, "", 0, msg, (), None
        )
        if kwargs:
            record.extra_fields = kwargs
        self._logger.handle(record)

    def debug(self, msg: str, **kwargs) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs) -> None:
        """Log info message."""
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs) -> None:
        """Log warning message."""
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs) -> None:
        """Log error message."""
        self._log(logging.ERROR, msg, **kwargs)

    def trade(
        self,
        action: str,
        pair: str,
        side: str,
        price: float,
        amount: float,
        **kwargs
    ) -> None:
        """Log a simulated fill (debug level, one per open/close)."""
        self.debug(
            f"TRADE: {action} {side} {amount:.6f} {pair} @ {price:.4f}",
            action=action,
            pair=pair,
            side=side,
            price=price,
            amount=amount,
            **kwargs
        )

    def rejection(self, pair: str, side: str, reason: str, **kwargs) -> None:
        """Log an order the simulator declined to fill."""
        self.debug(
            f"REJECTED: {side} {pair} - {reason}",
            pair=pair,
            side=side,
            reason=reason,
            **kwargs
        )

    def search_progress(
        self,
        method: str,
        completed: int,
        total: int,
        best_fitness: float,
        **kwargs: Any
    ) -> None:
        """Log parameter search progress."""
        pct = (completed / total * 100) if total > 0 else 0.0
        self.info(
            f"SEARCH: {method} {completed}/{total} ({pct:.0f}%) best={best_fitness:.4f}",
            method=method,
            completed=completed,
            total=total,
            best_fitness=best_fitness,
            **kwargs
        )


# Logger registry
_loggers: dict[str, StructuredLogger] = {}
_configured = False


def configure_logging(
    level: str = "INFO",
    format_type: str = "json",
) -> None:
    """
    Configure the logging system.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format_type: "json" or "text".
    """
    global _configured

    root_logger = logging.getLogger("tradelab")
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.propagate = False

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if format_type.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    _configured = True


def get_logger(name: str) -> StructuredLogger:
    """
    Get or create a structured logger.

    Args:
        name: Logger name (typically module name).

    Returns:
        StructuredLogger instance.
    """
    if not _configured:
        configure_logging()

    if name not in _loggers:
        _loggers[name] = StructuredLogger(name, logging.getLogger(name))

    return _loggers[name]
