"""Test configuration helpers for unit tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import pytest

from reconciliation_stream.core.config import Valves
from reconciliation_stream.core.logging_system import SessionLogger
from reconciliation_stream.streaming.stream_client import UploadPayload

API_BASE = "http://api.test/api"


# -----------------------------------------------------------------------------
# SSE helpers
# -----------------------------------------------------------------------------

def sse(event_type: Optional[str], **fields: Any) -> bytes:
    """Encode one SSE block carrying ``{"type": event_type, **fields}``."""
    payload: dict[str, Any] = dict(fields)
    if event_type is not None:
        payload["type"] = event_type
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


# -----------------------------------------------------------------------------
# Presentation sink
# -----------------------------------------------------------------------------

class RecordingSink:
    """PresentationSink that records every call as a tuple."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def update_state(self, state: str) -> None:
        self.calls.append(("state", state))

    def update_progress(self, percent: int) -> None:
        self.calls.append(("progress", percent))

    def update_step(self, step: str, index: int, message: str) -> None:
        self.calls.append(("step", step, index, message))

    def update_counter(self, counter_id: str, value: int, *, highlight: bool = False) -> None:
        self.calls.append(("counter", counter_id, value, highlight))

    def update_connection_status(self, status: str) -> None:
        self.calls.append(("connection", status))

    def show_file_analysis(self, analysis) -> None:
        self.calls.append(("file_analysis", dict(analysis)))

    def show_match_feedback(self, match_type: str, transaction_id: Optional[str]) -> None:
        self.calls.append(("match", match_type, transaction_id))

    def show_results(self, payload) -> None:
        self.calls.append(("results", payload))

    def show_error(self, message: str, details: Any = None) -> None:
        self.calls.append(("error", message, details))

    def of(self, kind: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == kind]

    def states(self) -> list[str]:
        return [call[1] for call in self.of("state")]


# -----------------------------------------------------------------------------
# Fake aiohttp session
# -----------------------------------------------------------------------------

class _FakeContent:
    """Fake aiohttp response content with configurable chunk iteration."""

    def __init__(
        self,
        chunks: list[bytes],
        *,
        exception: Optional[BaseException] = None,
        hang: bool = False,
    ) -> None:
        self._chunks = chunks
        self._exception = exception
        self._hang = hang

    async def iter_chunked(self, _size: int):
        for chunk in self._chunks:
            await asyncio.sleep(0)
            yield chunk
        if self._exception is not None:
            raise self._exception
        if self._hang:
            await asyncio.Event().wait()


class FakeStream:
    """Scripted response to one POST of the upload endpoint."""

    def __init__(
        self,
        chunks: Optional[list[bytes]] = None,
        *,
        status: int = 200,
        session_id: Optional[str] = "sess-1",
        body: str = "",
        exception: Optional[BaseException] = None,
        hang: bool = False,
    ) -> None:
        self.status = status
        self.reason = "OK" if status < 400 else "Bad Request"
        self.headers: dict[str, str] = {"X-Session-ID": session_id} if session_id else {}
        self.content = _FakeContent(chunks or [], exception=exception, hang=hang)
        self._body = body
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    async def text(self) -> str:
        return self._body

    def close(self) -> None:
        self.closed = True


class _FailingRequest:
    """Request context manager that fails before a response exists."""

    def __init__(self, exc: BaseException) -> None:
        self._exc = exc

    async def __aenter__(self):
        raise self._exc

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _FakeJSONResponse:
    """Fake aiohttp response for plain GET requests."""

    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self.reason = "OK" if status < 400 else "Error"
        self._payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self) -> str:
        return self._payload if isinstance(self._payload, str) else json.dumps(self._payload)

    async def json(self, content_type: Optional[str] = "application/json") -> Any:
        if isinstance(self._payload, str):
            return json.loads(self._payload)
        return self._payload


class FakeHttpSession:
    """Fake aiohttp ClientSession replaying scripted upload and GET responses.

    ``streams`` are consumed one per POST; an exception in the list makes that
    POST fail at connect time. ``gets`` maps a URL to ``(status, payload)``.
    """

    def __init__(
        self,
        streams: list[Any],
        *,
        gets: Optional[dict[str, tuple[int, Any]]] = None,
    ) -> None:
        self._streams = list(streams)
        self._gets = dict(gets or {})
        self.post_calls: list[tuple[str, Any]] = []
        self.get_calls: list[str] = []
        self.responses: list[FakeStream] = []
        self.closed = False

    def post(self, url: str, data=None, **_kwargs):
        self.post_calls.append((url, data))
        if not self._streams:
            return _FailingRequest(AssertionError("unexpected POST"))
        scripted = self._streams.pop(0)
        if isinstance(scripted, BaseException):
            return _FailingRequest(scripted)
        self.responses.append(scripted)
        return scripted

    def get(self, url: str, **_kwargs):
        self.get_calls.append(url)
        status, payload = self._gets.get(url, (404, {"success": False, "error": "not found"}))
        return _FakeJSONResponse(status, payload)

    async def close(self) -> None:
        self.closed = True


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _quiet_session_logger(monkeypatch):
    """Keep the session logger off stdout during tests."""
    monkeypatch.setattr(SessionLogger, "console", False)
    yield


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fast_valves() -> Valves:
    """Valves without delays, throttling or animation."""
    return Valves(
        BASE_URL=API_BASE,
        RESULT_FETCH_DELAY_MS=0,
        COUNTER_THROTTLE_MS=0,
        COUNTER_ANIMATION_MS=0,
        STALL_WARNING_SECONDS=0,
    )


@pytest.fixture
def payload() -> UploadPayload:
    return UploadPayload(
        filename="statement.ofx",
        content=b"OFXHEADER:100\n",
        fields={"bank": "itau"},
    )


@pytest.fixture
def recorded_sleep():
    """Backoff sleep that records delays and returns immediately."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
