"""Error handling and user-facing error formatting.

This module handles all error-related functionality:
- ReconciliationStreamError and its subclasses (one per failure class)
- Classification of transport exceptions into recoverable stream interruptions
- Error body parsing for rejected uploads
- Template selection and markdown rendering for the presentation sink

Failure classes:
- UploadRejectedError: non-2xx start response, terminal, never retried
- StreamInterruptedError: connect/read failure, retried with bounded backoff
- BackendReportedError: the backend sent an ``error`` event, terminal
- ResultFetchError: the follow-up result request failed, progress is kept
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

import aiohttp

from .utils import _pretty_json, _render_error_template, _safe_json_loads

if TYPE_CHECKING:
    from .config import Valves

LOGGER = logging.getLogger(__name__)

# Exceptions raised by aiohttp/asyncio while connecting or reading a stream.
_RECOVERABLE_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    ConnectionError,
)


class ReconciliationStreamError(RuntimeError):
    """Base class for every error surfaced by the stream client."""


class InvalidTransitionError(ReconciliationStreamError):
    """Raised when code asks the session for a transition the state machine forbids."""

    def __init__(self, current: Any, target: Any) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal session transition {current} -> {target}")


class UploadRejectedError(ReconciliationStreamError):
    """The start request returned a non-2xx status."""

    def __init__(
        self,
        *,
        status: int,
        reason: Optional[str] = None,
        message: Optional[str] = None,
        raw_body: Optional[str] = None,
    ) -> None:
        self.status = status
        self.reason = (reason or "").strip() or None
        self.message = (message or "").strip() or self.reason or "Upload failed"
        self.raw_body = raw_body or ""
        super().__init__(f"Upload rejected ({status}): {self.message}")

    @classmethod
    def from_body(cls, status: int, reason: Optional[str], body_text: str) -> "UploadRejectedError":
        """Build the error from the response body, preferring its JSON error field."""
        return cls(
            status=status,
            reason=reason,
            message=_extract_error_message(body_text),
            raw_body=body_text,
        )


class StreamInterruptedError(ReconciliationStreamError):
    """Connecting to, or reading from, the stream failed mid-flight."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        super().__init__(message)


class BackendReportedError(ReconciliationStreamError):
    """The backend emitted an ``error`` event and abandoned the job."""

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ResultFetchError(ReconciliationStreamError):
    """The session-scoped result request failed or returned ``success: false``."""

    def __init__(self, message: str, *, session_id: Optional[str] = None, status: Optional[int] = None) -> None:
        self.message = message
        self.session_id = session_id
        self.status = status
        super().__init__(message)


# -----------------------------------------------------------------------------
# Classification helpers
# -----------------------------------------------------------------------------

def _is_recoverable_transport_error(exc: BaseException) -> bool:
    """Return True when ``exc`` is a network-level failure worth reconnecting for."""
    if isinstance(exc, aiohttp.ClientResponseError):
        # Status errors are decided by the caller, not retried blindly.
        return False
    return isinstance(exc, _RECOVERABLE_TRANSPORT_ERRORS)


def _extract_error_message(body_text: str) -> Optional[str]:
    """Pull a human-readable message out of an error response body."""
    payload = _safe_json_loads(body_text)
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, dict):
                nested = value.get("message")
                if isinstance(nested, str) and nested.strip():
                    return nested.strip()
    text = (body_text or "").strip()
    return text[:500] or None


# -----------------------------------------------------------------------------
# Markdown formatting
# -----------------------------------------------------------------------------

def format_error_markdown(
    error: BaseException,
    valves: "Valves",
    *,
    session_id: Optional[str] = None,
    attempts: Optional[int] = None,
) -> str:
    """Render ``error`` with the template configured for its failure class."""
    if isinstance(error, UploadRejectedError):
        return _render_error_template(
            valves.UPLOAD_ERROR_TEMPLATE,
            {"status": error.status, "message": error.message, "session_id": session_id},
        )
    if isinstance(error, StreamInterruptedError):
        cause = error.cause if error.cause is not None else error
        cause_text = f"{type(cause).__name__}: {cause}" if str(cause) else type(cause).__name__
        return _render_error_template(
            valves.CONNECTION_ERROR_TEMPLATE,
            {"attempts": attempts, "cause": cause_text},
        )
    if isinstance(error, BackendReportedError):
        return _render_error_template(
            valves.BACKEND_ERROR_TEMPLATE,
            {
                "message": error.message,
                "details": _pretty_json(error.details),
                "session_id": session_id,
            },
        )
    if isinstance(error, ResultFetchError):
        return _render_error_template(
            valves.RESULT_ERROR_TEMPLATE,
            {"message": error.message, "session_id": session_id or error.session_id},
        )
    return _render_error_template(
        valves.BACKEND_ERROR_TEMPLATE,
        {"message": str(error) or type(error).__name__, "session_id": session_id},
    )
