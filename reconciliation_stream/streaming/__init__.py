"""Streaming subsystem.

This package contains the stream-processing pipeline:
- frame_reader: byte chunks -> SSE blocks
- event_decoder: SSE blocks -> typed events
- handlers: per-kind effects on progress, step text and counters
- counter_coalescer: throttled, animated counter rendering
- session: session state machine and snapshots
- event_emitter: presentation sink protocol and failure-isolating emitter
- stream_client: upload, read loop, reconnection and result delivery
"""

from .counter_coalescer import CounterCoalescer, CounterUpdate
from .event_decoder import Event, EventDecoder, EventKind
from .event_emitter import LoggingSink, PresentationEmitter, PresentationSink
from .frame_reader import Block, FrameReader
from .handlers import HandlerRegistry
from .session import LoggedEvent, Session, SessionSnapshot, SessionState
from .stream_client import StreamClient, UploadPayload

__all__ = [
    "Block",
    "FrameReader",
    "Event",
    "EventDecoder",
    "EventKind",
    "HandlerRegistry",
    "CounterCoalescer",
    "CounterUpdate",
    "LoggedEvent",
    "Session",
    "SessionSnapshot",
    "SessionState",
    "LoggingSink",
    "PresentationEmitter",
    "PresentationSink",
    "StreamClient",
    "UploadPayload",
]
