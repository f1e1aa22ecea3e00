from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, httpx, sqlalchemy) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS}
        message = record.getMessage().replace("{", "{{").replace("}", "}}")

        bound = logger.bind(**extra) if extra else logger
        bound.opt(depth=6, exception=record.exc_info).log(level, message)


def _json_sink(metadata: dict[str, str]):
    def sink(message: "logger.Message") -> None:
        record = message.record
        payload: dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **metadata,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = f"{span_context.trace_id:032x}"
            payload["span_id"] = f"{span_context.span_id:016x}"

        payload.update(record["extra"])
        if record["exception"] is not None:
            payload["exception"] = str(record["exception"].value)

        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    return sink


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Emit structured JSON logs from Loguru and the standard library."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.add(_json_sink(metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
