"""Structured JSON logging for the MCP server.

Every record is emitted as a single JSON object so the hosting platform's log
collector can index it without a custom parser::

    {"timestamp": "...", "level": "info", "logger": "penguin_bank",
     "message": "Request received", "context": {"requestId": "...", ...}}

``configure_logging`` wires the stdlib root logger once at startup, while
``StructuredLogger`` is the component the transport and dispatcher are handed
explicitly so tests can build a fresh one per case.
"""

from __future__ import annotations

import json
import logging
import os
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


def resolve_level(level: str) -> int:
    try:
        return LEVELS[level.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level}") from None


class JsonLogFormatter(logging.Formatter):
    """Render log records as one-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": _LEVEL_NAMES.get(record.levelno, record.levelname.lower()),
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["error"] = {
                "name": type(exc).__name__,
                "message": str(exc),
                "stack": "".join(traceback.format_exception(*record.exc_info)),
            }
        return json.dumps(entry, default=str, ensure_ascii=False)


def configure_logging(level: str = "info", log_dir: Optional[str] = None) -> Optional[str]:
    """Install JSON handlers on the root logger.

    Returns the path of the log file when file logging could be enabled.
    """

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file: Optional[str] = None
    file_logging_status = "console only"
    if log_dir:
        candidate = os.path.join(log_dir, "mcp-server.log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(candidate, mode="a"))
            log_file = candidate
            file_logging_status = f"logging to {candidate}"
        except OSError as exc:
            file_logging_status = f"file logging disabled for {log_dir}: {exc}"

    formatter = JsonLogFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=resolve_level(level), handlers=handlers, force=True)
    logging.getLogger("penguin_bank").info("Logging configured: %s", file_logging_status)
    return log_file


class StructuredLogger:
    """Level-filtered logger that attaches a context dict to every record."""

    def __init__(self, name: str = "penguin_bank", level: str = "info") -> None:
        self._logger = logging.getLogger(name)
        self._threshold = resolve_level(level)

    @property
    def level(self) -> str:
        return _LEVEL_NAMES[self._threshold]

    def set_level(self, level: str) -> None:
        self._threshold = resolve_level(level)

    def is_enabled_for(self, level: str) -> bool:
        return resolve_level(level) >= self._threshold

    def _log(self, levelno: int, message: str, context: Dict[str, Any], exc: Optional[BaseException] = None) -> None:
        if levelno < self._threshold:
            return
        exc_info = (type(exc), exc, exc.__traceback__) if exc is not None else None
        self._logger.log(levelno, message, exc_info=exc_info, extra={"context": context or None})

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, context)

    def error(self, message: str, *, exc: Optional[BaseException] = None, **context: Any) -> None:
        self._log(logging.ERROR, message, context, exc)

    def log_request(self, method: str, path: str, request_id: str, **context: Any) -> None:
        self.info("Request received", method=method, path=path, requestId=request_id, **context)

    def log_response(
        self,
        method: str,
        path: str,
        request_id: str,
        status_code: int,
        duration_ms: float,
        **context: Any,
    ) -> None:
        self.info(
            "Request completed",
            method=method,
            path=path,
            requestId=request_id,
            statusCode=status_code,
            duration=round(duration_ms, 2),
            **context,
        )

    def log_tool_execution(
        self,
        tool_name: str,
        request_id: str,
        duration_ms: float,
        success: bool,
        **context: Any,
    ) -> None:
        fields = {
            "toolName": tool_name,
            "requestId": request_id,
            "duration": round(duration_ms, 2),
            "success": success,
            **context,
        }
        if success:
            self._log(logging.INFO, "Tool executed successfully", fields)
        else:
            self._log(logging.ERROR, "Tool execution failed", fields)
