"""Logging setup for cadence: JSON or plain lines, tagged with the running task."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone

# Set by the scheduler loop around each execution; "-" outside of one
_task_uuid_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "task_uuid", default="-"
)

# Attributes every LogRecord carries; anything else arrived through extra=
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s  %(message)s"


def _iso_ms(created: float) -> str:
    stamp = datetime.fromtimestamp(created, tz=timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with caller extras flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": _iso_ms(record.created),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "task_uuid": _task_uuid_var.get(),
        }
        payload.update(
            (key, val) for key, val in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _install(handler: logging.Handler, level: str) -> None:
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def setup_json_logging(level: str = "INFO") -> None:
    """Route the root logger to stdout as JSON lines."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    _install(handler, level)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    if json_output:
        setup_json_logging(level)
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    _install(handler, level)


def bind_task_uuid(task_uuid: str) -> contextvars.Token:
    """Tag log lines in the current context with *task_uuid*; returns a reset token."""
    return _task_uuid_var.set(task_uuid)


def reset_task_uuid(token: contextvars.Token) -> None:
    _task_uuid_var.reset(token)


def get_task_uuid() -> str:
    return _task_uuid_var.get()
