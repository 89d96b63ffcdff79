"""
Ledger logging.

Records are emitted through the standard ``logging`` module with their
fields attached as ``record.fields``; ``LedgerFormatter`` renders them once,
either as a JSON line or as ``key=value`` pairs. Identifier fields (``uid``,
``session_id``) lead every rendered line so one user's hold history can be
grepped out of a busy log.

Example:
    ```python
    from quota_ledger.logging import HoldLog, get_logger

    logger = get_logger("quota_ledger.service")
    logger.log_hold(HoldLog(uid="u1", session_id="chat:1", action="placed", amount=1))
    ```
"""

from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar

from .errors import QuotaLedgerError

LEAD_FIELDS = ("event", "uid", "session_id", "operation")

_HANDLER_MARK = "_quota_ledger_handler"


@dataclass
class HoldLog:
    """One hold transition: placed, refreshed, committed, released, rejected or missing."""

    WARNING_ACTIONS: ClassVar[frozenset[str]] = frozenset({"rejected", "missing"})

    uid: str
    session_id: str
    action: str

    amount: int | None = None
    refund: bool | None = None
    remaining: int | None = None
    on_hold: int | None = None
    expires_at: str | None = None
    duration_ms: float | None = None

    @property
    def level(self) -> int:
        return logging.WARNING if self.action in self.WARNING_ACTIONS else logging.INFO

    @property
    def message(self) -> str:
        return f"Hold {self.action}"

    def fields(self) -> dict[str, Any]:
        return {"event": "hold", **{k: v for k, v in asdict(self).items() if v is not None}}


def error_fields(error: BaseException) -> dict[str, Any]:
    """Flatten an exception into log fields; ledger errors contribute code and context."""
    fields: dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": getattr(error, "message", None) or str(error),
    }
    if isinstance(error, QuotaLedgerError):
        fields["error_code"] = error.code.value
        fields["retryable"] = error.retryable
        fields["attempt"] = error.context.attempt
        for key in ("uid", "session_id", "operation"):
            value = getattr(error.context, key)
            if value is not None:
                fields[key] = value
        fields.update(error.context.extra)
    return fields


def since_ms(started: float) -> float:
    """Milliseconds elapsed since a ``time.perf_counter()`` reading."""
    return round((time.perf_counter() - started) * 1000, 3)


def _ordered(fields: dict[str, Any]) -> dict[str, Any]:
    lead = {key: fields[key] for key in LEAD_FIELDS if key in fields}
    return {**lead, **{k: v for k, v in fields.items() if k not in lead}}


class LedgerFormatter(logging.Formatter):
    """Render ``record.fields`` as a JSON line or as ``key=value`` text."""

    def __init__(self, *, json_output: bool = True) -> None:
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        fields = _ordered(getattr(record, "fields", None) or {})
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)

        if self.json_output:
            payload = {
                "ts": ts.isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                **fields,
            }
            if record.exc_info:
                payload["exception"] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)

        line = f"{ts:%H:%M:%S} {record.levelname:<7} {record.name}: {record.getMessage()}"
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """Thin wrapper over ``logging.Logger`` whose keyword arguments become record fields.

    Fields are passed per call, never stored on the logger, so concurrent
    requests for different users cannot bleed identifiers into each other.
    ``None`` values are dropped.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        clean = {k: v for k, v in fields.items() if v is not None}
        self._logger.log(level, message, extra={"fields": clean})

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def log_hold(self, hold_log: HoldLog) -> None:
        self._emit(hold_log.level, hold_log.message, hold_log.fields())

    def log_error(self, error: BaseException, message: str | None = None, **fields: Any) -> None:
        self._emit(
            logging.ERROR,
            message or f"{type(error).__name__} raised",
            {"event": "error", **error_fields(error), **fields},
        )


_loggers: dict[str, StructuredLogger] = {}
_installed: set[str] = set()
_settings: dict[str, Any] = {"level": "INFO", "json_output": True}


def _install_handler(root_name: str) -> None:
    root = logging.getLogger(root_name)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    setattr(handler, _HANDLER_MARK, True)
    handler.setFormatter(LedgerFormatter(json_output=_settings["json_output"]))
    root.addHandler(handler)
    root.setLevel(_settings["level"])
    _installed.add(root_name)


def configure_logging(*, level: str = "INFO", json_output: bool = True) -> None:
    """Set level and output format for every package logger, present and future."""
    _settings["level"] = level.upper()
    _settings["json_output"] = json_output
    for root_name in list(_installed):
        _install_handler(root_name)


def get_logger(name: str = "quota_ledger") -> StructuredLogger:
    """Return the cached logger for ``name``; the top-level package logger gets the ledger handler."""
    root_name = name.split(".", 1)[0]
    if root_name not in _installed:
        _install_handler(root_name)
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers[name] = StructuredLogger(name)
    return logger


__all__ = [
    "HoldLog",
    "LedgerFormatter",
    "StructuredLogger",
    "configure_logging",
    "error_fields",
    "get_logger",
    "since_ms",
]
