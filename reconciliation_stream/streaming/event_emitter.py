"""Presentation event emission.

Handles delivery of UI updates to the presentation collaborator:
- PresentationSink: the protocol the rendering layer implements
- LoggingSink: default sink that only logs (headless runs, scripts)
- PresentationEmitter: wraps a sink so a rendering failure never breaks the stream

All sink calls are synchronous and run on the event loop thread inside the
read loop, a coalescer callback or the result task.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class PresentationSink(Protocol):
    """Rendering layer for progress, counters, results and errors."""

    def update_state(self, state: str) -> None: ...

    def update_progress(self, percent: int) -> None: ...

    def update_step(self, step: str, index: int, message: str) -> None: ...

    def update_counter(self, counter_id: str, value: int, *, highlight: bool = False) -> None: ...

    def update_connection_status(self, status: str) -> None: ...

    def show_file_analysis(self, analysis: Mapping[str, Any]) -> None: ...

    def show_match_feedback(self, match_type: str, transaction_id: Optional[str]) -> None: ...

    def show_results(self, payload: Mapping[str, Any]) -> None: ...

    def show_error(self, message: str, details: Any = None) -> None: ...


class LoggingSink:
    """Sink that writes every update to the log instead of a UI."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER

    def update_state(self, state: str) -> None:
        self.logger.debug("UI state: %s", state)

    def update_progress(self, percent: int) -> None:
        self.logger.debug("Progress: %d%%", percent)

    def update_step(self, step: str, index: int, message: str) -> None:
        self.logger.debug("Step %d (%s): %s", index, step, message)

    def update_counter(self, counter_id: str, value: int, *, highlight: bool = False) -> None:
        self.logger.debug("Counter %s=%d%s", counter_id, value, " *" if highlight else "")

    def update_connection_status(self, status: str) -> None:
        self.logger.debug("Connection: %s", status)

    def show_file_analysis(self, analysis: Mapping[str, Any]) -> None:
        self.logger.info("File analysis: %s", dict(analysis))

    def show_match_feedback(self, match_type: str, transaction_id: Optional[str]) -> None:
        self.logger.debug("Match %s (transaction %s)", match_type, transaction_id)

    def show_results(self, payload: Mapping[str, Any]) -> None:
        self.logger.info("Reconciliation results: %s", dict(payload.get("summary") or {}))

    def show_error(self, message: str, details: Any = None) -> None:
        self.logger.error("Reconciliation error: %s", message)


# Step keys in display order; the index drives step indicators in the UI.
STEP_INDEX: dict[str, int] = {
    "file_uploaded": 0,
    "file_validated": 1,
    "extracting_transactions": 2,
    "transactions_extracted": 2,
    "file_analysis_complete": 2,
    "loading_mongo_data": 3,
    "mongo_data_loaded": 3,
    "processing_matches": 4,
    "matches_processed": 4,
    "llm_analysis_complete": 5,
    "finalizing_results": 6,
    "reconciliation_complete": 7,
    "results_ready": 7,
}


class PresentationEmitter:
    """Forwards updates to the sink, logging and swallowing sink failures.

    A broken renderer must not abort the stream: every call is isolated and
    failures are logged with the method that raised.
    """

    def __init__(self, sink: Optional[PresentationSink] = None, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER
        self._sink: PresentationSink = sink if sink is not None else LoggingSink(self.logger)

    @property
    def sink(self) -> PresentationSink:
        return self._sink

    def _call(self, method: str, *args: Any, **kwargs: Any) -> None:
        try:
            getattr(self._sink, method)(*args, **kwargs)
        except Exception as exc:
            self.logger.error("Failed to emit %s: %s", method, exc, exc_info=True)

    def emit_state(self, state: str) -> None:
        self._call("update_state", state)

    def emit_progress(self, progress: float) -> None:
        self._call("update_progress", round(min(1.0, max(0.0, progress)) * 100))

    def emit_step(self, step: str, message: str) -> None:
        self._call("update_step", step, STEP_INDEX.get(step, 0), message)

    def emit_counter(self, counter_id: str, value: int, *, highlight: bool = False) -> None:
        self._call("update_counter", counter_id, value, highlight=highlight)

    def emit_connection_status(self, status: str) -> None:
        self._call("update_connection_status", status)

    def emit_file_analysis(self, analysis: Mapping[str, Any]) -> None:
        self._call("show_file_analysis", dict(analysis))

    def emit_match_feedback(self, match_type: str, transaction_id: Optional[str]) -> None:
        self._call("show_match_feedback", match_type, transaction_id)

    def emit_results(self, payload: Mapping[str, Any]) -> None:
        self._call("show_results", payload)

    def emit_error(self, message: str, details: Any = None) -> None:
        self._call("show_error", message, details)
