"""Structured JSON logging with async-safe run and harvest context.

Every log line emitted while a pipeline runs carries the run_id of that
pipeline, so interleaved output from the street and captcha harvesters
can be told apart when both write to the same aggregator. Inside
``log_context(municipality=...)`` (or ``captcha_type=...``) every line
also names what is being harvested, including lines from the transport
and cache layers that never see the municipality themselves.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

# Async-safe run ID, propagates through await chains and tasks automatically
run_id: ContextVar[str] = ContextVar("run_id", default="")

# Harvest fields bound by log_context(); never mutated in place
_bound: ContextVar[dict] = ContextVar("log_context", default={})

EXTRA_KEYS = ("municipality", "captcha_type", "query", "captcha_id", "outcome", "duration_ms")


def get_run_id() -> str:
    """Return the current run ID, or empty string if not set."""
    return run_id.get()


def get_log_context() -> dict:
    return dict(_bound.get())


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """Attach ``fields`` to every JSON log line emitted inside the block.

    Tasks created inside the block inherit the fields. An explicit
    ``extra={...}`` on a single call wins over a bound field.
    """
    token = _bound.set({**_bound.get(), **fields})
    try:
        yield
    finally:
        _bound.reset(token)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        rid = run_id.get()
        if rid:
            log_entry["run_id"] = rid

        log_entry.update(_bound.get())

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(json_format: bool = True, level: str = "INFO") -> None:
    """Configure the root logger for a harvester process.

    Args:
        json_format: True for one JSON object per line, False for terminal text.
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root.addHandler(handler)

    # Quiet the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
