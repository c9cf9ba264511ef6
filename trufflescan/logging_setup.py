"""Logging setup: text or structured JSON on stderr."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOGGER_NAME = "trufflescan"

# Extra attributes copied into structured records when present
EXTRA_FIELDS = ("source", "detector", "chunk_count", "repo")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field_name in EXTRA_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        return json.dumps(log_data)


def resolve_level(debug: bool = False, trace: bool = False) -> int:
    """Trace wins over debug; otherwise INFO."""
    if trace:
        return TRACE
    if debug:
        return logging.DEBUG
    return logging.INFO


def setup_logging(
    log_format: str = "text",
    level: int = logging.INFO,
    stream: Optional[object] = None
) -> logging.Logger:
    """
    Configure the package logger with either text or JSON format.

    Results are written to stdout, so log records always go to stderr
    unless another stream is passed in.

    Args:
        log_format: "text" or "json"
        level: Logging level for the package logger
        stream: Destination stream (default: sys.stderr)

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Remove existing handlers so repeated runs do not duplicate output
    logger.handlers.clear()

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger

