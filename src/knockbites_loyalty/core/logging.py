from __future__ import annotations

import json
import logging
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STANDARD_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, sqlalchemy) to Loguru, keeping `extra=` fields."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS
        }
        target = logger.bind(**extra) if extra else logger
        target.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def _json_sink(message: "logger.Message", context: Dict[str, Any]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **context,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = format(span_context.trace_id, "032x")
        payload["span_id"] = format(span_context.span_id, "016x")

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    payload.update(record["extra"])
    print(json.dumps(payload, default=str), flush=True)


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Install the JSON sink and route stdlib logging through Loguru."""

    logger.remove()
    context = {"service": service_name, "environment": environment, "version": version}
    logger.add(lambda message: _json_sink(message, context), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


__all__ = ["InterceptHandler", "configure_logging"]
