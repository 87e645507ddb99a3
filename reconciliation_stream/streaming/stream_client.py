"""Streamed reconciliation client.

StreamClient owns one reconciliation run end to end:
- Uploads the statement and opens the streamed response (aiohttp)
- Feeds response chunks through FrameReader and EventDecoder
- Routes events through the HandlerRegistry and the CounterCoalescer
- Reconnects with bounded exponential backoff (tenacity)
- Fetches the final result once the backend reports completion
- Tears everything down on ``disconnect()``

All work runs on one event loop. The read loop is a single task per
``start_streaming`` call; the result fetch, the stall watchdog, the coalescer
timer and ramps, and the backoff sleep are the only other scheduled work.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp
from tenacity import AsyncRetrying, RetryCallState

from ..api.result_fetcher import ResultFetcher, shape_result
from ..core.config import Valves
from ..core.errors import (
    BackendReportedError,
    ReconciliationStreamError,
    ResultFetchError,
    StreamInterruptedError,
    UploadRejectedError,
    _is_recoverable_transport_error,
    format_error_markdown,
)
from ..core.logging_system import SessionLogger
from ..core.utils import _fallback_session_id
from .counter_coalescer import CounterCoalescer, CounterUpdate
from .event_decoder import Event, EventDecoder, EventKind
from .event_emitter import PresentationEmitter, PresentationSink
from .frame_reader import Block, FrameReader
from .handlers import MATCHES, HandlerRegistry
from .session import MALFORMED_EVENT_KIND, Session, SessionSnapshot, SessionState

LOGGER = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]

_RECONNECTABLE_STATES = frozenset({SessionState.STREAMING, SessionState.RECONNECTING})


@dataclass
class UploadPayload:
    """Multipart body of the start request.

    A fresh ``aiohttp.FormData`` is built for every attempt because a form
    can only be serialized once.
    """

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    field_name: str = "file"
    fields: dict[str, Any] = field(default_factory=dict)

    def to_form(self) -> aiohttp.FormData:
        form = aiohttp.FormData()
        for name, value in self.fields.items():
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                value = json.dumps(value, ensure_ascii=False)
            form.add_field(name, str(value))
        form.add_field(
            self.field_name,
            self.content,
            filename=self.filename,
            content_type=self.content_type,
        )
        return form


# -----------------------------------------------------------------------------
# Reconnect policy (tenacity hooks)
# -----------------------------------------------------------------------------

class _ReconnectWait:
    """Custom Tenacity wait strategy: base * 2^(attempts so far) seconds."""

    def __init__(self, session: Session, base_delay_ms: int) -> None:
        self._session = session
        self._base = max(0, base_delay_ms) / 1000

    def __call__(self, retry_state: RetryCallState) -> float:
        return self._base * (2 ** self._session.reconnect_attempts)


class _ReconnectStop:
    """Custom Tenacity stop condition keyed on the session's reconnect counter."""

    def __init__(self, session: Session, max_attempts: int) -> None:
        self._session = session
        self._max_attempts = max(0, max_attempts)

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._session.reconnect_attempts >= self._max_attempts


def _outcome_exception(retry_state: RetryCallState) -> Optional[BaseException]:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    return retry_state.outcome.exception()


# -----------------------------------------------------------------------------
# StreamClient
# -----------------------------------------------------------------------------

class StreamClient:
    """Drives one streamed reconciliation session at a time.

    Args:
        valves: Client configuration; defaults are read from the environment
        sink: Presentation layer receiving progress, counters and results
        session: Optional shared ``aiohttp.ClientSession``; the client never closes an injected one
        sleep: Backoff sleep used between reconnect attempts, injectable for tests
        logger: Logger override
    """

    def __init__(
        self,
        valves: Optional[Valves] = None,
        *,
        sink: Optional[PresentationSink] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: SleepFunc = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves or Valves()
        SessionLogger.get_logger()
        self.logger = logger or LOGGER
        self._emitter = PresentationEmitter(sink, logger=self.logger)
        self._http = session
        self._owns_http = session is None
        self._sleep = sleep

        self._session = Session(event_log_capacity=self.valves.EVENT_LOG_CAPACITY)
        self._coalescer = self._build_coalescer(self._session)
        self._registry = self._build_registry(self._coalescer)

        self._stream_task: Optional[asyncio.Task[None]] = None
        self._result_task: Optional[asyncio.Task[None]] = None
        self._watchdog_task: Optional[asyncio.Task[None]] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._last_block_at: Optional[float] = None
        # Session ids whose SessionLogger buffers this client still holds.
        self._logged_session_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "StreamClient":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> "StreamClient":
        """Create the HTTP session unless one was injected or is already open."""
        if self._http is None or self._http.closed:
            self._http = self._create_http_session()
            self._owns_http = True
        return self

    async def close(self) -> None:
        """Disconnect, release session log buffers and close the HTTP session if owned."""
        await self.disconnect()
        self._release_session_logs()
        SessionLogger.cleanup()
        if self._owns_http and self._http is not None:
            if not self._http.closed:
                await self._http.close()
            self._http = None

    def _release_session_logs(self, *, keep: Optional[str] = None) -> None:
        """Drop the SessionLogger buffers of every session id this client used, except ``keep``."""
        for session_id in list(self._logged_session_ids):
            if session_id == keep:
                continue
            SessionLogger.cleanup(session_id)
            self._logged_session_ids.discard(session_id)

    def _create_http_session(self) -> aiohttp.ClientSession:
        """Return a ClientSession whose read timeout tolerates long quiet phases."""
        valves = self.valves
        connect_timeout = float(valves.HTTP_CONNECT_TIMEOUT_SECONDS)
        total_timeout_value = valves.HTTP_TOTAL_TIMEOUT_SECONDS
        total_timeout = float(total_timeout_value) if total_timeout_value else None
        sock_read = float(valves.HTTP_SOCK_READ_SECONDS) if total_timeout is None else None
        timeout = aiohttp.ClientTimeout(total=total_timeout, connect=connect_timeout, sock_read=sock_read)
        self.logger.debug(
            "HTTP timeouts: connect=%ss total=%s sock_read=%s",
            connect_timeout,
            total_timeout if total_timeout is not None else "disabled",
            sock_read if sock_read is not None else "disabled",
        )
        connector = aiohttp.TCPConnector(limit=10, keepalive_timeout=75, ttl_dns_cache=300)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)

    def _build_coalescer(self, session: Session) -> CounterCoalescer:
        return CounterCoalescer(
            session,
            self._emitter,
            throttle_ms=self.valves.COUNTER_THROTTLE_MS,
            animation_ms=self.valves.COUNTER_ANIMATION_MS,
            animation_max_delta=self.valves.COUNTER_ANIMATION_MAX_DELTA,
        )

    def _build_registry(self, coalescer: CounterCoalescer) -> HandlerRegistry:
        return HandlerRegistry(
            coalescer=coalescer,
            emitter=self._emitter,
            on_completion=self._on_completion,
            on_backend_error=self._on_backend_error,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def emitter(self) -> PresentationEmitter:
        return self._emitter

    @property
    def state(self) -> SessionState:
        return self._session.state

    def snapshot(self) -> SessionSnapshot:
        """Return a read-only copy of the current session."""
        return self._session.snapshot()

    async def start_streaming(self, payload: UploadPayload) -> SessionSnapshot:
        """Upload ``payload`` and consume the stream until results, error or disconnect.

        A run already in progress is disconnected first. Returns the final
        snapshot; domain failures end in ``ERROR`` instead of raising.
        """
        if self._stream_task is not None or self._session.state is not SessionState.IDLE:
            await self.disconnect()
        await self.open()
        self._release_session_logs()

        session = Session(event_log_capacity=self.valves.EVENT_LOG_CAPACITY)
        self._session = session
        self._coalescer = self._build_coalescer(session)
        self._registry = self._build_registry(self._coalescer)

        self._set_state(session, SessionState.UPLOADING)
        self._emitter.emit_connection_status("connecting")

        task = asyncio.create_task(self._run(session, payload), name="reconciliation-stream")
        self._stream_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._stream_task is task and task.done():
                self._stream_task = None

        if not task.cancelled():
            # Unexpected (non-domain) failures surface to the caller.
            task.result()
        return session.snapshot()

    async def disconnect(self) -> None:
        """Cancel all in-flight work and return the session to IDLE.

        Cancels the read task (and any backoff sleep inside it), the result
        fetch, the stall watchdog, the coalescer timer and running ramps, and
        closes the open response. Progress already shown is kept.
        """
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._stream_task, self._result_task, self._watchdog_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        self._coalescer.cancel()
        if self._response is not None:
            self._response.close()
            self._response = None
        # IDLE before awaiting, so a caller woken by the cancelled run sees it.
        if self._session.state is not SessionState.IDLE:
            self._set_state(self._session, SessionState.IDLE)
            self.logger.info("Session %s disconnected", self._session.id or "-")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._stream_task = None
        self._result_task = None
        self._watchdog_task = None

    async def health_check(self) -> bool:
        """Return True when the backend health endpoint answers 2xx."""
        await self.open()
        assert self._http is not None
        url = self.valves.health_url()
        try:
            async with self._http.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                self.logger.debug("Health check %s -> %s %s", url, resp.status, resp.reason)
                return 200 <= resp.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Health check failed for %s: %s", url, exc)
            return False

    def inject_event(self, kind: str, **fields: Any) -> None:
        """Dispatch a synthetic event against the current session.

        Intended for debugging a presentation layer without a backend. Must be
        called from the event loop (completion schedules the result task).
        """
        event = Event(kind=EventKind.parse(kind), raw_type=kind, fields=dict(fields))
        self.logger.debug("Injecting synthetic %s event", kind)
        self._registry.dispatch(event, self._session)

    # ------------------------------------------------------------------
    # Run loop with reconnection
    # ------------------------------------------------------------------

    async def _run(self, session: Session, payload: UploadPayload) -> None:
        SessionLogger.log_level.set(getattr(logging, self.valves.LOG_LEVEL, logging.INFO))
        retryer = AsyncRetrying(
            retry=partial(self._should_reconnect, session),
            stop=_ReconnectStop(session, self.valves.MAX_RECONNECT_ATTEMPTS),
            wait=_ReconnectWait(session, self.valves.RECONNECT_BASE_DELAY_MS),
            after=partial(self._after_interruption, session),
            before_sleep=partial(self._before_reconnect, session),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    await self._stream_once(session, payload)
        except StreamInterruptedError as exc:
            self._fail(session, exc, attempts=session.reconnect_attempts)
            return
        except UploadRejectedError as exc:
            self._fail(session, exc)
            return
        finally:
            self._stop_watchdog()

        result_task = self._result_task
        if result_task is not None:
            await result_task

    def _should_reconnect(self, session: Session, retry_state: RetryCallState) -> bool:
        exc = _outcome_exception(retry_state)
        if not isinstance(exc, StreamInterruptedError):
            return False
        if session.completed:
            return False
        # A failure before the stream was ever accepted is not a dropped stream.
        return session.state in _RECONNECTABLE_STATES

    def _after_interruption(self, session: Session, retry_state: RetryCallState) -> None:
        exc = _outcome_exception(retry_state)
        self.logger.warning("Stream for session %s interrupted: %s", session.id or "-", exc)
        self._set_state(session, SessionState.CONNECTION_LOST)

    def _before_reconnect(self, session: Session, retry_state: RetryCallState) -> None:
        session.reconnect_attempts += 1
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        self._set_state(session, SessionState.RECONNECTING)
        self._emitter.emit_connection_status("reconnecting")
        message = (
            f"Reconnecting... (attempt {session.reconnect_attempts}/{self.valves.MAX_RECONNECT_ATTEMPTS})"
        )
        session.set_step(None, message)
        self._emitter.emit_step(session.current_step, message)
        self.logger.info(
            "Reconnect attempt %d/%d in %.1fs",
            session.reconnect_attempts,
            self.valves.MAX_RECONNECT_ATTEMPTS,
            delay,
        )

    async def _stream_once(self, session: Session, payload: UploadPayload) -> None:
        """One upload plus read pass. Transport failures become StreamInterruptedError."""
        assert self._http is not None
        url = self.valves.stream_url()
        try:
            async with self._http.post(url, data=payload.to_form()) as resp:
                self._response = resp
                if resp.status < 200 or resp.status >= 300:
                    body_text = await resp.text()
                    raise UploadRejectedError.from_body(resp.status, resp.reason, body_text)
                self._accept_stream(session, resp)
                await self._read_stream(session, resp)
        except ReconciliationStreamError:
            raise
        except Exception as exc:
            if not _is_recoverable_transport_error(exc):
                raise
            if session.completed:
                self.logger.info("Stream closed after completion (%s); ignoring", type(exc).__name__)
                return
            raise StreamInterruptedError(
                f"Stream connection failed: {type(exc).__name__}: {exc}",
                cause=exc,
            ) from exc
        finally:
            self._response = None

        if not session.completed and not session.is_terminal:
            raise StreamInterruptedError("Stream ended before the reconciliation completed")

    def _accept_stream(self, session: Session, resp: aiohttp.ClientResponse) -> None:
        header_value = (resp.headers.get(self.valves.SESSION_ID_HEADER) or "").strip()
        session_id = header_value or _fallback_session_id()
        if not header_value:
            self.logger.warning(
                "Response carried no %s header; using %s", self.valves.SESSION_ID_HEADER, session_id
            )
        if session.id and session.id != session_id:
            self.logger.info("Stream resumed under new session %s (was %s)", session_id, session.id)
        session.id = session_id
        SessionLogger.session_id.set(session_id)
        self._logged_session_ids.add(session_id)
        self._release_session_logs(keep=session_id)

        self._set_state(session, SessionState.STREAMING)
        self._emitter.emit_connection_status("connected")
        self._last_block_at = asyncio.get_running_loop().time()
        self._start_watchdog(session)

    async def _read_stream(self, session: Session, resp: aiohttp.ClientResponse) -> None:
        reader = FrameReader()
        decoder = EventDecoder(on_malformed=partial(self._log_malformed, session))
        async for chunk in resp.content.iter_chunked(self.valves.STREAM_CHUNK_SIZE):
            for block in reader.feed(chunk):
                if self._handle_block(session, decoder, block):
                    return
        tail = reader.flush_final()
        if tail is not None:
            self._handle_block(session, decoder, tail)

    def _handle_block(self, session: Session, decoder: EventDecoder, block: Block) -> bool:
        """Decode and dispatch one block. Returns True once the session is terminal."""
        self._last_block_at = asyncio.get_running_loop().time()
        session.reconnect_attempts = 0
        event = decoder.decode(block)
        if event is None:
            return False
        self._registry.dispatch(event, session)
        return session.is_terminal

    def _log_malformed(self, session: Session, block: Block, reason: str) -> None:
        session.log_event(MALFORMED_EVENT_KIND, message=reason, data={"raw": block.text})

    # ------------------------------------------------------------------
    # Completion and failure
    # ------------------------------------------------------------------

    def _on_completion(self, event: Event, session: Session) -> None:
        if session.completed:
            self.logger.debug("Duplicate completion event for session %s ignored", session.id)
            return
        session.completed = True
        inline = event.get("result")
        self._result_task = asyncio.get_running_loop().create_task(
            self._deliver_results(session, inline if isinstance(inline, Mapping) else None),
            name="reconciliation-result",
        )

    async def _deliver_results(self, session: Session, inline: Optional[Mapping[str, Any]]) -> None:
        delay = self.valves.RESULT_FETCH_DELAY_MS / 1000
        if delay > 0:
            await asyncio.sleep(delay)

        if inline is not None:
            raw = dict(inline)
        else:
            try:
                await self.open()
                assert self._http is not None
                raw = await ResultFetcher(self._http, self.valves).fetch_result(session.id or "")
            except ResultFetchError as exc:
                self.logger.error("Could not load results for session %s: %s", session.id, exc)
                self._fail(session, exc)
                return

        payload = shape_result(raw)
        session.result = raw
        session.summary.update(payload["summary"])
        conciliated = payload["summary"].get("conciliated_count")
        if conciliated:
            self._coalescer.submit(CounterUpdate(MATCHES, conciliated))
        self._coalescer.flush()

        self._emitter.emit_results(payload)
        session.set_step("results_ready", "Results ready")
        self._emitter.emit_step("results_ready", "Results ready")
        if session.can_transition(SessionState.RESULTS):
            self._set_state(session, SessionState.RESULTS)
        else:
            self.logger.warning("Results delivered while session is %s", session.state.value)

    def _on_backend_error(self, error: BackendReportedError, session: Session) -> None:
        self._fail(session, error)

    def _fail(self, session: Session, error: BaseException, *, attempts: Optional[int] = None) -> None:
        message = format_error_markdown(error, self.valves, session_id=session.id, attempts=attempts)
        session.error = message
        self.logger.error("Reconciliation session %s failed: %s", session.id or "-", error)
        self._coalescer.flush()
        if session.can_transition(SessionState.ERROR):
            self._set_state(session, SessionState.ERROR)
        else:
            self.logger.warning("Cannot move session from %s to error", session.state.value)
        if isinstance(error, (StreamInterruptedError, UploadRejectedError)):
            self._emitter.emit_connection_status("error")
        self._emitter.emit_error(message, getattr(error, "details", None))

    def _set_state(self, session: Session, target: SessionState) -> None:
        session.transition(target)
        self._emitter.emit_state(target.value)

    # ------------------------------------------------------------------
    # Stall watchdog
    # ------------------------------------------------------------------

    def _start_watchdog(self, session: Session) -> None:
        limit = self.valves.STALL_WARNING_SECONDS
        if limit <= 0 or (self._watchdog_task is not None and not self._watchdog_task.done()):
            return
        self._watchdog_task = asyncio.get_running_loop().create_task(
            self._watch_for_stall(session, limit),
            name="reconciliation-stall-watchdog",
        )

    def _stop_watchdog(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None

    async def _watch_for_stall(self, session: Session, limit: float) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(limit / 2)
            last = self._last_block_at if self._last_block_at is not None else loop.time()
            idle = loop.time() - last
            if idle >= limit:
                self.logger.warning(
                    "No stream events for %.0fs (session %s, state %s)",
                    idle,
                    session.id or "-",
                    session.state.value,
                )
