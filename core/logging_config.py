"""Structured logging for the coordinator, with a per-tick trace_id via contextvars."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default="-"
)

# LogRecord attributes that are not caller-supplied extra= fields
_RESERVED = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class TraceFormatter(logging.Formatter):
    """Render records as compact JSON (``fmt="json"``) or as a readable line.

    Both renderings carry the current trace_id and any ``extra=`` fields.
    """

    def __init__(self, fmt: str = "json") -> None:
        super().__init__()
        self.as_json = fmt != "text"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        fields = {
            k: v for k, v in vars(record).items()
            if k not in _RESERVED and not k.startswith("_")
        }
        exc = self.formatException(record.exc_info) if record.exc_info else None
        if self.as_json:
            return self._as_json(record, ts, fields, exc)
        return self._as_text(record, ts, fields, exc)

    def _as_json(self, record, ts, fields, exc) -> str:
        data: dict = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": _trace_id_var.get(),
            **fields,
        }
        if exc:
            data["exc"] = exc
        return json.dumps(data, default=str)

    def _as_text(self, record, ts, fields, exc) -> str:
        line = (
            f"{ts:%H:%M:%S} {record.levelname:<7} {record.name} "
            f"[{_trace_id_var.get()}] {record.getMessage()}"
        )
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if exc:
            line += "\n" + exc
        return line


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Replace the root logger's handlers with a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TraceFormatter(fmt))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


@contextmanager
def trace_scope(prefix: str = "tick") -> Iterator[str]:
    """Bind a fresh trace_id for the block, then restore the caller's."""
    token = _trace_id_var.set(f"{prefix}-{uuid.uuid4().hex[:12]}")
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


def get_trace_id() -> str:
    return _trace_id_var.get()
