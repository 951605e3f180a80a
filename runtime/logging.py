"""
Resume Pipeline — Structured Logging

JSON log lines under the `resume_pipeline` logger namespace. Every module
logs through `logging.getLogger("resume_pipeline.<name>")`; structured
fields are passed as `extra={"structured": {...}}` and merged into the
JSON entry.

Usage:
    from runtime.logging import configure_logging, session_logger

    configure_logging(level="INFO")
    log = session_logger("sess-123", component="orchestrator")
    log.info("stage started", extra={"structured": {"stage": "research"}})
    # {"timestamp": ..., "message": "stage started",
    #  "session_id": "sess-123", "component": "orchestrator", "stage": "research"}
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "resume_pipeline"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CC_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Merge structured fields from extra
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the resume_pipeline logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured resume_pipeline root logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the resume_pipeline namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Session-scoped adapter
# ═══════════════════════════════════════════════════════════════════

class SessionLoggerAdapter(logging.LoggerAdapter):
    """Stamps every record with the adapter's fields (session_id, ...)."""

    def process(self, msg, kwargs):
        extra = kwargs.get("extra") or {}
        structured = dict(self.extra)
        structured.update(extra.get("structured", {}))
        kwargs["extra"] = {**extra, "structured": structured}
        return msg, kwargs


def session_logger(session_id: str, component: str = "pipeline", **fields: Any) -> SessionLoggerAdapter:
    return SessionLoggerAdapter(
        get_logger(component),
        {"session_id": session_id, "component": component, **fields},
    )
