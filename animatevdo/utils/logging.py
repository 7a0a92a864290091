"""Structured JSON logging for services, stages and workers.

Every log line is a JSON object with an ``event`` name plus keyword context,
ready for log aggregation. ``bind()`` returns a child logger that stamps the
same context (project_id, stage, ...) on every subsequent line, so a single
stage invocation can be followed across retries and fan-out items.

Usage:
    from animatevdo.utils.logging import get_logger

    log = get_logger(__name__)
    stage_log = log.bind(project_id=str(project.id), stage="research")
    stage_log.info("stage_started")
"""

import json
import logging
import sys
from typing import Any


class StructuredLogger:
    """Wrapper around a stdlib Logger that emits JSON lines with bound context."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = context or {}

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a logger that includes ``context`` in every entry."""
        return StructuredLogger(self._logger, {**self._context, **context})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        log_entry = {"event": event, **self._context, **kwargs}
        # UUIDs, datetimes and Decimals are rendered with str()
        return json.dumps(log_entry, default=str)

    def info(self, event: str, **kwargs: Any) -> None:
        self._logger.info(self._format_json(event, **kwargs))

    def error(self, event: str, exc_info: bool = False, **kwargs: Any) -> None:
        self._logger.error(self._format_json(event, **kwargs), exc_info=exc_info)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_json(event, **kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_json(event, **kwargs))


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return StructuredLogger(logger)
