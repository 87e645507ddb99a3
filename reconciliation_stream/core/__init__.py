"""Core infrastructure module.

Foundation services required by the streaming subsystem:
- Configuration schema (Valves)
- Error classes and message formatting
- Session logging
- Pure utility functions
"""

from .config import Valves, LOGGER
from .errors import (
    BackendReportedError,
    InvalidTransitionError,
    ReconciliationStreamError,
    ResultFetchError,
    StreamInterruptedError,
    UploadRejectedError,
    format_error_markdown,
)
from .logging_system import SessionLogger
from .utils import (
    _coerce_int,
    _coerce_progress,
    _safe_json_loads,
    _render_error_template,
    _pretty_json,
)

__all__ = [
    "Valves",
    "LOGGER",
    "ReconciliationStreamError",
    "InvalidTransitionError",
    "UploadRejectedError",
    "StreamInterruptedError",
    "BackendReportedError",
    "ResultFetchError",
    "format_error_markdown",
    "SessionLogger",
    "_coerce_int",
    "_coerce_progress",
    "_safe_json_loads",
    "_render_error_template",
    "_pretty_json",
]
