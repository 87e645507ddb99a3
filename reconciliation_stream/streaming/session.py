"""Session state and lifecycle.

The Session is the single mutable record of one streamed reconciliation job.
It is owned by the StreamClient; everything else receives a SessionSnapshot.

State machine::

    IDLE -> UPLOADING -> STREAMING -> RESULTS
                 |           |  \\
                 v           v   -> ERROR
               ERROR   CONNECTION_LOST <-> RECONNECTING -> STREAMING
                             |                  |
                             v                  v
                           ERROR              ERROR

    any state -> IDLE (disconnect)
"""

from __future__ import annotations

import copy
import datetime
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ..core.errors import InvalidTransitionError

LOGGER = logging.getLogger(__name__)

MALFORMED_EVENT_KIND = "malformed"


class SessionState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    STREAMING = "streaming"
    RESULTS = "results"
    ERROR = "error"
    CONNECTION_LOST = "connection-lost"
    RECONNECTING = "reconnecting"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.UPLOADING}),
    SessionState.UPLOADING: frozenset({SessionState.STREAMING, SessionState.ERROR}),
    SessionState.STREAMING: frozenset(
        {SessionState.RESULTS, SessionState.ERROR, SessionState.CONNECTION_LOST}
    ),
    SessionState.CONNECTION_LOST: frozenset({SessionState.RECONNECTING, SessionState.ERROR}),
    SessionState.RECONNECTING: frozenset(
        {SessionState.STREAMING, SessionState.CONNECTION_LOST, SessionState.ERROR}
    ),
    SessionState.RESULTS: frozenset(),
    SessionState.ERROR: frozenset(),
}

TERMINAL_STATES = frozenset({SessionState.RESULTS, SessionState.ERROR})


@dataclass(frozen=True, slots=True)
class LoggedEvent:
    """Entry in the session's bounded event log."""

    timestamp: datetime.datetime
    kind: str
    message: Optional[str]
    data: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only copy of a Session handed to callers."""

    id: Optional[str]
    state: SessionState
    progress: float
    current_step: str
    status_message: str
    counters: Mapping[str, int]
    events: tuple[LoggedEvent, ...]
    reconnect_attempts: int
    summary: Mapping[str, int]
    result: Optional[Mapping[str, Any]]
    error: Optional[str]
    file_analysis: Mapping[str, Any]

    @property
    def events_count(self) -> int:
        return len(self.events)

    @property
    def progress_percent(self) -> int:
        return round(self.progress * 100)


@dataclass
class Session:
    """Mutable state of the active stream. Only the StreamClient mutates it."""

    event_log_capacity: int = 50
    id: Optional[str] = None
    state: SessionState = SessionState.IDLE
    progress: float = 0.0
    current_step: str = ""
    status_message: str = ""
    counters: dict[str, int] = field(default_factory=dict)
    reconnect_attempts: int = 0
    summary: dict[str, int] = field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    file_analysis: dict[str, Any] = field(default_factory=dict)
    completed: bool = False
    event_log: deque[LoggedEvent] = field(init=False)

    def __post_init__(self) -> None:
        self.event_log = deque(maxlen=max(1, self.event_log_capacity))

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def can_transition(self, target: SessionState) -> bool:
        if target is SessionState.IDLE:
            return True
        return target in _TRANSITIONS[self.state]

    def transition(self, target: SessionState) -> SessionState:
        """Move to ``target`` and return the previous state."""
        if target is self.state:
            return self.state
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state, target)
        previous, self.state = self.state, target
        LOGGER.info("Session %s: %s -> %s", self.id or "-", previous.value, target.value)
        return previous

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Progress and counters
    # ------------------------------------------------------------------

    def advance_progress(self, value: float) -> bool:
        """Raise progress to ``value`` (clamped to [0, 1]); never lowers it."""
        value = min(1.0, max(0.0, float(value)))
        if value <= self.progress:
            if value < self.progress:
                LOGGER.debug("Ignoring progress %.3f behind current %.3f", value, self.progress)
            return False
        self.progress = value
        return True

    def set_step(self, step: Optional[str], message: Optional[str] = None) -> None:
        if step:
            self.current_step = step
        if message:
            self.status_message = message

    def apply_counter(self, counter_id: str, value: int) -> Optional[int]:
        """Set ``counter_id`` to ``value`` unless that would lower it.

        Returns the previous value when applied, None when ignored.
        """
        current = self.counters.get(counter_id, 0)
        if value < current:
            LOGGER.debug("Ignoring counter %s=%d behind displayed %d", counter_id, value, current)
            return None
        self.counters[counter_id] = value
        return current

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def log_event(
        self,
        kind: str,
        *,
        message: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime.datetime] = None,
    ) -> LoggedEvent:
        entry = LoggedEvent(
            timestamp=timestamp or datetime.datetime.now(tz=datetime.timezone.utc),
            kind=kind,
            message=message,
            data=MappingProxyType(copy.deepcopy(dict(data or {}))),
        )
        self.event_log.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            state=self.state,
            progress=self.progress,
            current_step=self.current_step,
            status_message=self.status_message,
            counters=MappingProxyType(dict(self.counters)),
            events=tuple(self.event_log),
            reconnect_attempts=self.reconnect_attempts,
            summary=MappingProxyType(dict(self.summary)),
            result=MappingProxyType(copy.deepcopy(self.result)) if self.result is not None else None,
            error=self.error,
            file_analysis=MappingProxyType(copy.deepcopy(self.file_analysis)),
        )
