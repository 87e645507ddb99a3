"""Configuration management for the reconciliation stream client.

This module contains the configuration schema and constants:
- Valves: Client configuration (endpoints, timeouts, reconnect policy, throttling)
- Error template constants used for user-facing messages
- Counter and event log defaults
"""

from __future__ import annotations

import logging
import os
from typing import Literal, Optional, cast

from pydantic import BaseModel, ConfigDict, Field, model_validator

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_DEFAULT_BASE_URL = "http://localhost:5000/api"
_SESSION_ID_PREFIX = "session_"
_ALLOWED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_UPLOAD_ERROR_TEMPLATE = (
    "### Upload rejected\n\n"
    "{{#if status}}\n"
    "- **HTTP status**: `{status}`\n"
    "{{/if}}\n"
    "{{#if message}}\n"
    "- **Message**: {message}\n"
    "{{/if}}\n"
    "{{#if session_id}}\n"
    "- **Session**: `{session_id}`\n"
    "{{/if}}\n"
)

DEFAULT_CONNECTION_ERROR_TEMPLATE = (
    "### Connection lost\n\n"
    "The reconciliation stream could not be restored.\n"
    "{{#if attempts}}\n"
    "- **Reconnect attempts**: {attempts}\n"
    "{{/if}}\n"
    "{{#if cause}}\n"
    "- **Last error**: `{cause}`\n"
    "{{/if}}\n"
)

DEFAULT_BACKEND_ERROR_TEMPLATE = (
    "### Processing error\n\n"
    "{message}\n"
    "{{#if details}}\n"
    "- **Details**: {details}\n"
    "{{/if}}\n"
    "{{#if session_id}}\n"
    "- **Session**: `{session_id}`\n"
    "{{/if}}\n"
)

DEFAULT_RESULT_ERROR_TEMPLATE = (
    "### Results unavailable\n\n"
    "Reconciliation finished but the full result could not be loaded.\n"
    "{{#if message}}\n"
    "- **Reason**: {message}\n"
    "{{/if}}\n"
    "{{#if session_id}}\n"
    "- **Session**: `{session_id}`\n"
    "{{/if}}\n"
)


def _default_base_url() -> str:
    """Return the API base URL env default."""
    return (os.getenv("RECONCILIATION_API_BASE_URL") or "").strip() or _DEFAULT_BASE_URL


def _default_log_level() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    """Return the log level env default, falling back to INFO."""
    value = (os.getenv("RECONCILIATION_LOG_LEVEL") or "INFO").strip().upper()
    if value not in _ALLOWED_LOG_LEVELS:
        value = "INFO"
    return cast(Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], value)


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------

class Valves(BaseModel):
    """Client configuration shared by every stream session."""

    model_config = ConfigDict(populate_by_name=True)

    # Endpoints
    BASE_URL: str = Field(
        default_factory=_default_base_url,
        description="Reconciliation API base URL. Defaults to the RECONCILIATION_API_BASE_URL environment variable.",
    )
    STREAM_PATH: str = Field(
        default="/stream/reconcile",
        description="Path of the streamed upload endpoint (POST, multipart form).",
    )
    RESULT_PATH_TEMPLATE: str = Field(
        default="/stream/session/{session_id}/result",
        description="Path of the session-scoped result endpoint. `{session_id}` is substituted.",
    )
    HEALTH_PATH: str = Field(
        default="/health",
        description="Path of the health check endpoint.",
    )
    SESSION_ID_HEADER: str = Field(
        default="X-Session-ID",
        description="Response header carrying the backend session identifier.",
    )

    # HTTP
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection before failing.",
    )
    HTTP_SOCK_READ_SECONDS: int = Field(
        default=300,
        ge=1,
        description="Idle seconds allowed between chunks of the streamed response before the read is treated as lost.",
    )
    HTTP_TOTAL_TIMEOUT_SECONDS: Optional[int] = Field(
        default=None,
        ge=1,
        description="Overall HTTP timeout. Null disables it so long reconciliation runs are not interrupted.",
    )
    STREAM_CHUNK_SIZE: int = Field(
        default=4096,
        ge=1,
        description="Maximum bytes requested per read from the streamed response.",
    )

    # Reconnection
    MAX_RECONNECT_ATTEMPTS: int = Field(
        default=3,
        ge=0,
        description="Reconnect attempts allowed after the stream drops before the session fails.",
    )
    RECONNECT_BASE_DELAY_MS: int = Field(
        default=2000,
        ge=0,
        description="Backoff base. Attempt n waits RECONNECT_BASE_DELAY_MS * 2^(n-1).",
    )

    # Counters
    COUNTER_THROTTLE_MS: int = Field(
        default=100,
        ge=0,
        description="Minimum interval between counter flushes (100 ms = 10 visible updates per second).",
    )
    COUNTER_ANIMATION_MS: int = Field(
        default=100,
        ge=0,
        description="Duration of the integer ramp used for small counter increments. 0 disables the ramp.",
    )
    COUNTER_ANIMATION_MAX_DELTA: int = Field(
        default=10,
        ge=0,
        description="Largest increment that is ramped. Larger jumps snap and pulse.",
    )

    # Session
    EVENT_LOG_CAPACITY: int = Field(
        default=50,
        ge=1,
        description="Number of recent events kept in the in-memory session log.",
    )
    RESULT_FETCH_DELAY_MS: int = Field(
        default=500,
        ge=0,
        description="Delay after the completion event before fetching the full result, letting the backend persist it.",
    )
    STALL_WARNING_SECONDS: float = Field(
        default=30.0,
        ge=0,
        description="Warn in the log when no event arrives for this long. 0 disables the watchdog.",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_default_log_level,
        description="Minimum level captured in the per-session log buffer.",
    )

    # Error templates
    UPLOAD_ERROR_TEMPLATE: str = Field(
        default=DEFAULT_UPLOAD_ERROR_TEMPLATE,
        description="Markdown shown when the upload is rejected. Supports {{#if var}} blocks.",
    )
    CONNECTION_ERROR_TEMPLATE: str = Field(
        default=DEFAULT_CONNECTION_ERROR_TEMPLATE,
        description="Markdown shown when reconnection is exhausted.",
    )
    BACKEND_ERROR_TEMPLATE: str = Field(
        default=DEFAULT_BACKEND_ERROR_TEMPLATE,
        description="Markdown shown when the backend reports an error event.",
    )
    RESULT_ERROR_TEMPLATE: str = Field(
        default=DEFAULT_RESULT_ERROR_TEMPLATE,
        description="Markdown shown when the final result cannot be fetched.",
    )

    @model_validator(mode="after")
    def _normalize_urls(self) -> "Valves":
        """Strip trailing slashes from BASE_URL and ensure paths are rooted."""
        base = (self.BASE_URL or "").strip().rstrip("/")
        if not base:
            raise ValueError("BASE_URL must not be empty")
        self.BASE_URL = base
        for name in ("STREAM_PATH", "HEALTH_PATH", "RESULT_PATH_TEMPLATE"):
            value = getattr(self, name)
            if not value.startswith("/"):
                setattr(self, name, f"/{value}")
        return self

    def stream_url(self) -> str:
        return f"{self.BASE_URL}{self.STREAM_PATH}"

    def result_url(self, session_id: str) -> str:
        return f"{self.BASE_URL}{self.RESULT_PATH_TEMPLATE.format(session_id=session_id)}"

    def health_url(self) -> str:
        return f"{self.BASE_URL}{self.HEALTH_PATH}"
