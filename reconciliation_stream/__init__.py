"""Streaming client for the bank-statement reconciliation backend.

This package uploads a statement, follows the backend's Server-Sent Events
stream and drives a presentation layer:
- Core infrastructure: config (Valves), errors, session logging, helpers
- Streaming subsystem: frame reader, event decoder, handlers, counter
  coalescer, session state machine, stream client
- API subsystem: session-scoped result fetcher

Typical use::

    async with StreamClient(sink=my_sink) as client:
        snapshot = await client.start_streaming(
            UploadPayload(filename="statement.ofx", content=data)
        )
"""

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("reconciliation-stream")
except Exception:
    __version__ = "1.0.0"  # Fallback if not installed as package

from .api import ResultFetcher, shape_result
from .core import (
    BackendReportedError,
    InvalidTransitionError,
    ReconciliationStreamError,
    ResultFetchError,
    SessionLogger,
    StreamInterruptedError,
    UploadRejectedError,
    Valves,
)
from .streaming import (
    Event,
    EventKind,
    LoggingSink,
    PresentationSink,
    SessionSnapshot,
    SessionState,
    StreamClient,
    UploadPayload,
)

__all__ = [
    "__version__",
    "StreamClient",
    "UploadPayload",
    "Valves",
    "PresentationSink",
    "LoggingSink",
    "SessionSnapshot",
    "SessionState",
    "Event",
    "EventKind",
    "ResultFetcher",
    "shape_result",
    "SessionLogger",
    "ReconciliationStreamError",
    "InvalidTransitionError",
    "UploadRejectedError",
    "StreamInterruptedError",
    "BackendReportedError",
    "ResultFetchError",
]
