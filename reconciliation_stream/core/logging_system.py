"""Logging system with per-session log capture.

This module handles all logging-related functionality:
- SessionLogger: package logger wired to the active stream session
- Structured log event building for the in-memory buffers
- Bounded per-session buffers and their explicit cleanup

The SessionLogger uses contextvars to track the current session_id. The
stream client sets it inside its read task, so every record emitted while a
session is running (handlers, coalescer callbacks, result fetches) is tagged
and buffered under that session without passing identifiers around.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)


class _SessionContextHandler(logging.Handler):
    """Handler installed on the package logger; sees records from every child module."""

    def emit(self, record: logging.LogRecord) -> None:
        SessionLogger.process_record(record)


class SessionLogger:
    """Package logger that captures console output and an in-memory log buffer.

    Attributes:
        session_id: ContextVar storing the active stream session id.
        log_level:  ContextVar storing the minimum level to emit for this session.
        logs:       Map of session_id -> fixed-size deque of structured log events.
    """

    session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    console: bool = True
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _session_last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured session log event extracted from a LogRecord."""
        try:
            message = record.getMessage()
        except Exception:
            message = str(getattr(record, "msg", "") or "")

        event: dict[str, Any] = {
            "created": float(getattr(record, "created", time.time())),
            "level": str(getattr(record, "levelname", "INFO") or "INFO"),
            "logger": str(getattr(record, "name", "") or ""),
            "session_id": getattr(record, "session_id", None),
            "func": str(getattr(record, "funcName", "") or ""),
            "lineno": int(getattr(record, "lineno", 0) or 0),
            "message": message,
        }
        if record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        elif record.exc_text:
            event["exception"] = {"text": str(record.exc_text)}
        return event

    @classmethod
    def get_logger(cls, name: str = "reconciliation_stream") -> logging.Logger:
        """Create a logger wired to the current SessionLogger context.

        Args:
            name: Logger name; defaults to the package root so every module
                logger under it is captured through propagation.

        Returns:
            logging.Logger: A configured logger that writes both to stdout and
            the in-memory ``SessionLogger.logs`` buffer keyed by session id.
        """
        logger = logging.getLogger(name)
        logger.handlers = [h for h in logger.handlers if not isinstance(h, _SessionContextHandler)]
        logger.setLevel(logging.DEBUG)
        root_logger = logging.getLogger()
        if not any(isinstance(handler, logging.NullHandler) for handler in root_logger.handlers):
            root_logger.addHandler(logging.NullHandler())
        logger.propagate = True

        handler = _SessionContextHandler()

        def _attach_session(record: logging.LogRecord) -> bool:
            """Attach session metadata and the per-session console level."""
            try:
                record.session_id = cls.session_id.get()
                record.session_log_level = cls.log_level.get()
            except Exception:
                # Logging must never break stream handling.
                pass
            return True

        handler.addFilter(_attach_session)
        logger.addHandler(handler)
        return logger

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        """Set the maximum in-memory lines retained per session (best effort)."""
        try:
            value_int = int(value)
        except (TypeError, ValueError):
            return
        cls.max_lines = max(50, min(200000, value_int))

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        try:
            session_log_level = getattr(record, "session_log_level", logging.INFO)
            if cls.console and record.levelno >= int(session_log_level):
                sys.stdout.write(cls._console_formatter.format(record) + "\n")
                sys.stdout.flush()
            session_id = getattr(record, "session_id", None)
            if not session_id:
                return
            event = cls._build_event(record)
            with cls._state_lock:
                buffer = cls.logs.get(session_id)
                if buffer is None or buffer.maxlen != cls.max_lines:
                    buffer = deque(buffer or (), maxlen=cls.max_lines)
                    cls.logs[session_id] = buffer
                buffer.append(event)
                cls._session_last_seen[session_id] = time.time()
        except Exception:
            # Never raise from logging hooks.
            return

    @classmethod
    def events_for(cls, session_id: str) -> list[dict[str, Any]]:
        """Return a copy of the buffered events for ``session_id``."""
        with cls._state_lock:
            return list(cls.logs.get(session_id, ()))

    @classmethod
    def cleanup(cls, session_id: Optional[str] = None, *, max_age_seconds: float = 3600) -> None:
        """Drop one session's buffer, or every buffer idle longer than ``max_age_seconds``."""
        with cls._state_lock:
            if session_id is not None:
                cls.logs.pop(session_id, None)
                cls._session_last_seen.pop(session_id, None)
                return
            cutoff = time.time() - max_age_seconds
            stale = [sid for sid, ts in cls._session_last_seen.items() if ts < cutoff]
            for sid in stale:
                cls.logs.pop(sid, None)
                cls._session_last_seen.pop(sid, None)
