"""Loguru configuration for the membership service.

Every record is written as one JSON line carrying the service identity and,
inside a traced request, the OpenTelemetry trace and span ids. Set
``LOG_JSON=false`` for the coloured human format during local work. Records
emitted through stdlib ``logging`` (uvicorn, SQLAlchemy, httpx) are routed
into the same sink.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

# Library loggers that only matter at WARNING and above.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")

_STDLIB_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records to Loguru, keeping the caller and any ``extra`` fields."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        fields = {key: value for key, value in vars(record).items() if key not in _STDLIB_ATTRS}
        fields.setdefault("stdlib_logger", record.name)
        logger.bind(**fields).opt(depth=depth, exception=record.exc_info).log(level, "{}", record.getMessage())


def _json_sink(identity: Dict[str, str]):
    def write(message: "logger.Message") -> None:
        record = message.record
        line: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **identity,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            line["trace_id"] = format(span_context.trace_id, "032x")
            line["span_id"] = format(span_context.span_id, "016x")

        line.update(record["extra"])

        if record["exception"] is not None:
            exc_type, exc_value, _ = record["exception"]
            line["exception"] = {
                "type": getattr(exc_type, "__name__", None),
                "message": str(exc_value) if exc_value is not None else None,
            }

        sys.stdout.write(json.dumps(line, default=str) + "\n")

    return write


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str | int = "INFO",
    json_output: bool = True,
) -> None:
    """Replace Loguru's default sink and take over stdlib logging."""

    logger.remove()
    if json_output:
        identity = {"service": service_name, "environment": environment, "version": version}
        logger.add(_json_sink(identity), level=level, backtrace=False, diagnose=False)
    else:
        logger.add(sys.stderr, level=level, colorize=True, backtrace=True, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
