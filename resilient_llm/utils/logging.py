"""
Structured logging for the retry engine.

Each line is one JSON object. Lines emitted while a call is running carry that
call's ``call_id``, so one logical call can be followed from its first attempt
through fixer calls and fallback to the final outcome.

EXAMPLE QUERIES (Loki / jq)
===========================
# Every failed attempt
{project="resilient-llm"} | json | action="attempt_failed"

# Calls answered by the fallback backend
{project="resilient-llm"} | json | action="call_done" mode="fallback"

# Everything one call did
{project="resilient-llm"} | json | call_id="3f9c2a1b"

# Fatal aborts
{project="resilient-llm"} | json | level="ERROR" action="call_fatal"

USAGE
=====
from resilient_llm.utils.logging import log, get_logger, call_scope

logger = get_logger()
with call_scope():
    log.info(logger, "llm.retry", "call_start", "Starting retry loop", max_retries=3)

ACTION NAMING
=============
  *_start: an operation begins
  *_done: it succeeded
  *_failed: it failed
  *_skipped: deliberately not done
  *_fallback: switched to a secondary path
"""

import contextlib
import contextvars
import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

PACKAGE_LOGGER = "resilient_llm"

# Fields every structured line starts with, in this order
_HEAD = ("ts", "level", "module", "action", "msg")

_call_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "resilient_llm_call_id", default=None
)


def current_call_id() -> Optional[str]:
    return _call_id.get()


@contextlib.contextmanager
def call_scope(call_id: Optional[str] = None) -> Iterator[str]:
    """Tag every log line in this block (and its tasks) with a call id.

    Nested scopes keep the outer id, so a fixer call made inside a retry loop
    logs under the loop's id.
    """
    outer = _call_id.get()
    if outer is not None and call_id is None:
        yield outer
        return

    token = _call_id.set(call_id or uuid.uuid4().hex[:8])
    try:
        yield _call_id.get()
    finally:
        _call_id.reset(token)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StructuredFormatter(logging.Formatter):
    """Renders records as compact JSON, or one readable line when ``pretty``."""

    def __init__(self, pretty: bool = False):
        super().__init__()
        self.pretty = pretty

    def _fields(self, record: logging.LogRecord) -> dict[str, Any]:
        payload = getattr(record, "rl_payload", None)
        if payload is None:
            # Record from a third-party logger
            return {
                "ts": _now(),
                "level": record.levelname,
                "module": record.name,
                "action": "log",
                "msg": record.getMessage(),
            }

        fields = {
            "ts": _now(),
            "level": record.levelname,
            "module": payload["module"],
            "action": payload["action"],
            "msg": record.getMessage(),
        }
        if payload.get("call_id"):
            fields["call_id"] = payload["call_id"]
        fields.update(payload["fields"])
        return fields

    def format(self, record: logging.LogRecord) -> str:
        fields = self._fields(record)
        if not self.pretty:
            return json.dumps(fields, default=str, separators=(",", ":"))
        if getattr(record, "rl_payload", None) is None:
            return fields["msg"]
        return self._one_line(fields)

    @staticmethod
    def _one_line(fields: dict[str, Any]) -> str:
        clock = fields["ts"][11:23]
        module = fields["module"].upper()[:12].ljust(12)
        rest = " ".join(f"{k}={v}" for k, v in fields.items() if k not in _HEAD)
        line = f"{clock} {fields['level'][0]} [{module}] {fields['action']}: {fields['msg']}"
        return f"{line} | {rest}" if rest else line


class StructuredLogger:
    """
    Emits structured records through a stdlib logger.

    Every method takes the logger, a module name, an action name, a message,
    and context fields. Fields set to ``None`` are left out of the line.
    """

    def _emit(
        self,
        logger: logging.Logger,
        level: int,
        module: str,
        action: str,
        msg: str,
        fields: dict[str, Any],
    ) -> None:
        if not logger.isEnabledFor(level):
            return
        payload = {
            "module": module,
            "action": action,
            "call_id": _call_id.get(),
            "fields": {k: v for k, v in fields.items() if v is not None},
        }
        logger.log(level, msg, extra={"rl_payload": payload})

    def debug(self, logger: logging.Logger, module: str, action: str, msg: str, **fields) -> None:
        self._emit(logger, logging.DEBUG, module, action, msg, fields)

    def info(self, logger: logging.Logger, module: str, action: str, msg: str, **fields) -> None:
        self._emit(logger, logging.INFO, module, action, msg, fields)

    def warning(self, logger: logging.Logger, module: str, action: str, msg: str, **fields) -> None:
        self._emit(logger, logging.WARNING, module, action, msg, fields)

    def error(
        self,
        logger: logging.Logger,
        module: str,
        action: str,
        msg: str,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
        **fields,
    ) -> None:
        """Log at ERROR; ``error`` and ``error_type`` are always named fields."""
        fields.update(error=error, error_type=error_type)
        self._emit(logger, logging.ERROR, module, action, msg, fields)


# Shared instance used by every module
log = StructuredLogger()


def get_logger() -> logging.Logger:
    """The package logger. Library code never attaches handlers to it."""
    return logging.getLogger(PACKAGE_LOGGER)


# Dependencies that are noisy below WARNING
_QUIET_LOGGERS = (
    "langchain",
    "langchain_core",
    "langchain_openai",
    "openai",
    "httpx",
    "httpcore",
    "asyncio",
)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Install the structured formatter on the root logger.

    For applications embedding the engine; call once at startup. Arguments
    win over the environment:

      LOG_LEVEL   DEBUG, INFO (default), WARNING, ERROR
      LOG_FORMAT  json (default) or pretty
    """
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    fmt = fmt or os.environ.get("LOG_FORMAT", "json")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(pretty=fmt == "pretty"))
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        handlers=[handler],
        force=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
