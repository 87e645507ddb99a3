"""Event handlers for the reconciliation stream.

Maps every EventKind to one handler. Handlers only:
- advance session progress (monotonic, anchored per kind)
- update the step and status text
- submit counter updates to the coalescer
- publish file analysis and match feedback to the presentation layer
- hand completion and backend errors back to the stream client

Handlers read fields defensively; the backend sends no schema and several
fields have had more than one name over time.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from ..core.errors import BackendReportedError
from ..core.utils import _coerce_int, _coerce_progress, _first_int_in_text, _first_present
from .counter_coalescer import CounterUpdate
from .event_decoder import Event, EventKind

if TYPE_CHECKING:
    from .counter_coalescer import CounterCoalescer
    from .event_emitter import PresentationEmitter
    from .session import Session

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Event, "Session"], None]
CompletionCallback = Callable[[Event, "Session"], None]
ErrorCallback = Callable[[BackendReportedError, "Session"], None]

# Progress checkpoints per kind.
ANCHOR_FILE_UPLOADED = 0.10
ANCHOR_FILE_VALIDATED = 0.15
ANCHOR_EXTRACTING = 0.25
ANCHOR_EXTRACTED = 0.35
ANCHOR_LOADING_BACKEND_DATA = 0.45
ANCHOR_BACKEND_DATA_LOADED = 0.55
ANCHOR_MATCHING_START = 0.65
ANCHOR_MATCHING_END = 0.80
ANCHOR_LLM_ANALYSIS = 0.85
ANCHOR_COMPLETE = 1.0

# Counter ids understood by the presentation layer.
UPLOADED = "uploadedCount"
EXTRACTED = "extractedCount"
PROCESSED = "processedCount"
MATCHES = "matchesCount"

_COUNTER_ALIASES = {
    "processed": PROCESSED,
    "extracted": EXTRACTED,
    "matches": MATCHES,
    "uploaded": UPLOADED,
}


def _matching_progress(current: Any, total: Any) -> Optional[float]:
    """Interpolate between the matching anchors from ``current/total``."""
    current_i = _coerce_int(current)
    total_i = _coerce_int(total)
    if not current_i or not total_i or total_i <= 0:
        return None
    ratio = min(1.0, max(0.0, current_i / total_i))
    return ANCHOR_MATCHING_START + ratio * (ANCHOR_MATCHING_END - ANCHOR_MATCHING_START)


class HandlerRegistry:
    """Dispatch table from EventKind to handler, with a generic fallback.

    The table must cover every EventKind member; construction fails
    otherwise, so UNKNOWN is just another exhaustively mapped case.
    """

    def __init__(
        self,
        *,
        coalescer: "CounterCoalescer",
        emitter: "PresentationEmitter",
        on_completion: CompletionCallback,
        on_backend_error: ErrorCallback,
    ) -> None:
        self._coalescer = coalescer
        self._emitter = emitter
        self._on_completion = on_completion
        self._on_backend_error = on_backend_error

        self._handlers = self._build_table()
        missing = [kind.name for kind in EventKind if kind not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for event kinds: {', '.join(missing)}")

    def _build_table(self) -> dict[EventKind, Handler]:
        return {
            EventKind.FILE_UPLOADED: self._handle_file_uploaded,
            EventKind.FILE_VALIDATED: self._handle_file_validated,
            EventKind.EXTRACTING_TRANSACTIONS: self._handle_extracting,
            EventKind.TRANSACTIONS_EXTRACTED: self._handle_extracted,
            EventKind.FILE_ANALYSIS_COMPLETE: self._handle_file_analysis_complete,
            EventKind.LOADING_BACKEND_DATA: self._handle_loading_backend_data,
            EventKind.BACKEND_DATA_LOADED: self._handle_backend_data_loaded,
            EventKind.PROCESSING_MATCHES: self._handle_processing_matches,
            EventKind.MATCHES_PROCESSED: self._handle_matches_processed,
            EventKind.LLM_ANALYSIS_COMPLETE: self._handle_llm_analysis,
            EventKind.RECONCILIATION_COMPLETE: self._handle_reconciliation_complete,
            EventKind.ERROR: self._handle_error,
            EventKind.TRANSACTION_PROGRESS: self._handle_transaction_progress,
            EventKind.PROCESSING_PROGRESS: self._handle_processing_progress,
            EventKind.TRANSACTION_PROCESSING: self._handle_transaction_processing,
            EventKind.MATCH_FOUND: self._handle_match_found,
            EventKind.COUNTER_UPDATE: self._handle_counter_update,
            EventKind.BATCH_PROCESSED: self._handle_batch_processed,
            EventKind.PROGRESS: self._handle_legacy_progress,
            EventKind.COMPLETE: self._handle_reconciliation_complete,
            EventKind.UNKNOWN: self._handle_generic,
        }

    @property
    def kinds(self) -> frozenset[EventKind]:
        return frozenset(self._handlers)

    def dispatch(self, event: Event, session: "Session") -> None:
        """Run the handler for ``event`` and record it in the session log.

        Handler failures are logged and treated as a no-op for that event.
        """
        if event.kind is EventKind.UNKNOWN:
            LOGGER.info("Unmapped event type %r; using generic handler", event.raw_type)
        handler = self._handlers[event.kind]
        try:
            handler(event, session)
        except Exception:
            LOGGER.error("Handler for %r failed; event ignored", event.raw_type, exc_info=True)
        finally:
            session.log_event(
                event.raw_type or event.kind.value,
                message=_first_present(event.fields, "message", "step"),
                data=event.fields,
                timestamp=event.received_at,
            )

    # ------------------------------------------------------------------
    # Shared effects
    # ------------------------------------------------------------------

    def _progress(self, session: "Session", value: Optional[float]) -> None:
        if value is None:
            return
        if session.advance_progress(value):
            self._emitter.emit_progress(session.progress)

    def _step(self, session: "Session", step: str, message: str) -> None:
        session.set_step(step, message)
        self._emitter.emit_step(step, message)

    def _message(self, session: "Session", message: Any) -> None:
        if isinstance(message, str) and message:
            session.set_step(None, message)
            self._emitter.emit_step(session.current_step, message)

    def _count(self, counter_id: str, value: Any) -> None:
        number = _coerce_int(value)
        if number is None:
            return
        self._coalescer.submit(CounterUpdate(counter_id, number))

    def _publish_analysis(self, session: "Session", analysis: Mapping[str, Any]) -> None:
        cleaned = {key: value for key, value in analysis.items() if value is not None}
        if not cleaned:
            return
        session.file_analysis.update(cleaned)
        self._emitter.emit_file_analysis(session.file_analysis)

    # ------------------------------------------------------------------
    # Upload and file analysis
    # ------------------------------------------------------------------

    def _handle_file_uploaded(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_FILE_UPLOADED)
        self._step(session, "file_uploaded", "File uploaded successfully")
        self._count(UPLOADED, 1)

    def _handle_file_validated(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_FILE_VALIDATED)
        self._step(session, "file_validated", "File validated")
        file_format = event.get("file_format")
        if file_format:
            LOGGER.info("Detected file format: %s", file_format)
            self._publish_analysis(session, {"file_format": file_format})

    def _handle_extracting(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_EXTRACTING)
        self._step(session, "extracting_transactions", "Extracting transactions from file...")

    def _handle_extracted(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_EXTRACTED)

        fields = event.fields
        data = fields.get("data")
        count = _coerce_int(
            _first_present(fields, "transaction_count", "count", "total_transactions", "extracted_count")
        )
        if not count and isinstance(data, Mapping):
            count = _coerce_int(data.get("count"))
        if not count:
            transactions = fields.get("transactions")
            if isinstance(transactions, list) and transactions:
                count = len(transactions)
            else:
                count = _first_int_in_text(fields.get("message")) or 0
        LOGGER.debug("Extracted transaction count resolved to %d", count)

        self._step(session, "transactions_extracted", f"{count} transactions extracted")
        self._count(EXTRACTED, count)

        if fields.get("file_format") or fields.get("bank_detected"):
            self._publish_analysis(
                session,
                {
                    "file_format": fields.get("file_format"),
                    "bank_detected": fields.get("bank_detected"),
                    "file_size_mb": fields.get("file_size_mb"),
                    "date_range": fields.get("date_range"),
                    "expenses_count": fields.get("expenses_count"),
                    "incomes_count": fields.get("incomes_count"),
                    "total_amount": fields.get("total_amount"),
                },
            )

    def _handle_file_analysis_complete(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_EXTRACTED)
        self._step(session, "file_analysis_complete", "File analysis complete")
        stats = event.get("statistics")
        if not isinstance(stats, Mapping):
            return
        self._publish_analysis(
            session,
            {
                "file_format": stats.get("format"),
                "bank_detected": stats.get("bank_detected"),
                "date_range": stats.get("date_range"),
                "file_size_mb": stats.get("size_mb"),
                "expenses_count": stats.get("expenses_count"),
                "incomes_count": stats.get("incomes_count"),
                "expenses_amount": stats.get("total_expenses"),
                "incomes_amount": stats.get("total_incomes"),
                "total_amount": stats.get("total_amount"),
            },
        )

    # ------------------------------------------------------------------
    # Backend data
    # ------------------------------------------------------------------

    def _handle_loading_backend_data(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_LOADING_BACKEND_DATA)
        self._step(session, "loading_mongo_data", "Loading system data...")

    def _handle_backend_data_loaded(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_BACKEND_DATA_LOADED)
        count = _coerce_int(event.get("count")) or 0
        if count:
            LOGGER.info("%d system documents loaded", count)
        self._step(session, "mongo_data_loaded", f"{count} documents loaded")

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _handle_processing_matches(self, event: Event, session: "Session") -> None:
        current = event.get("current_transaction")
        total = event.get("total_transactions")
        self._progress(session, _matching_progress(current, total) or ANCHOR_MATCHING_START)

        if current and total:
            self._count(PROCESSED, current)
            message = f"Processing transaction {current}/{total}..."
        elif event.get("processed_count") is not None:
            self._count(PROCESSED, event.get("processed_count"))
            message = f"{event.get('processed_count')} transactions processed..."
        else:
            message = "Processing matches..."
        self._step(session, "processing_matches", message)

    def _handle_matches_processed(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_MATCHING_END)

        matches = event.get("matches_count")
        processed = _first_present(event.fields, "total_processed", "processed_count")
        self._count(MATCHES, matches)
        self._count(PROCESSED, processed)

        total = event.get("total_transactions")
        if event.get("processed_count") and total:
            message = f"{event.get('processed_count')}/{total} transactions processed"
        elif matches:
            message = f"{matches} matches identified"
        else:
            message = "Matches identified"
        self._step(session, "matches_processed", message)

    def _handle_llm_analysis(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_LLM_ANALYSIS)
        self._step(session, "llm_analysis_complete", "AI analysis complete")

    # ------------------------------------------------------------------
    # Terminal events
    # ------------------------------------------------------------------

    def _handle_reconciliation_complete(self, event: Event, session: "Session") -> None:
        self._progress(session, ANCHOR_COMPLETE)
        self._step(session, "reconciliation_complete", "Reconciliation completed successfully!")

        summary = event.get("summary")
        try:
            if isinstance(summary, Mapping):
                session.summary.update(
                    {key: number for key, value in summary.items() if (number := _coerce_int(value)) is not None}
                )
                self._final_counters(summary)
        finally:
            # A bad summary must not lose the completion itself.
            self._on_completion(event, session)

    def _final_counters(self, summary: Mapping[str, Any]) -> None:
        total = _first_present(summary, "total_transactions", "extracted_count")
        self._count(EXTRACTED, total)
        self._count(PROCESSED, _first_present(summary, "total_transactions", "processed_count"))
        self._count(MATCHES, _first_present(summary, "conciliated_count", "matches_count"))
        self._count(UPLOADED, 1)

    def _handle_error(self, event: Event, session: "Session") -> None:
        message = event.get("error") or event.get("message") or "Processing error"
        details = event.get("details")
        if details:
            LOGGER.error("Backend error details: %s", details)
        self._on_backend_error(BackendReportedError(str(message), details=details), session)

    # ------------------------------------------------------------------
    # Live processing
    # ------------------------------------------------------------------

    def _handle_transaction_progress(self, event: Event, session: "Session") -> None:
        current = event.get("current")
        total = event.get("total")
        self._count(PROCESSED, current)
        if current and total:
            self._message(session, f"Processing transaction {current}/{total}")
            self._progress(session, _matching_progress(current, total))
        self._count(MATCHES, event.get("matches_found"))

    def _handle_processing_progress(self, event: Event, session: "Session") -> None:
        self._count(PROCESSED, event.get("processed_count"))
        self._count(MATCHES, event.get("matches_count"))
        percent = _coerce_progress(_percent_fraction(event.get("progress_percent")))
        self._progress(session, percent)
        self._message(session, event.get("message"))

    def _handle_transaction_processing(self, event: Event, session: "Session") -> None:
        current = event.get("current")
        total = event.get("total")
        if current and total:
            self._message(session, f"Processing transaction {current} of {total}")
            self._count(PROCESSED, current)
            self._progress(session, _coerce_progress(_percent_fraction(event.get("progress_percent"))))
        LOGGER.debug(
            "Transaction %s/%s in progress (id=%s)", current, total, event.get("transaction_id")
        )

    def _handle_match_found(self, event: Event, session: "Session") -> None:
        self._count(MATCHES, event.get("current_matches"))
        match_type = str(event.get("match_type") or "match")
        transaction_id = event.get("transaction_id")
        self._emitter.emit_match_feedback(match_type, None if transaction_id is None else str(transaction_id))

    def _handle_counter_update(self, event: Event, session: "Session") -> None:
        counters = event.get("counters")
        if not isinstance(counters, Mapping):
            return
        for name, value in counters.items():
            self._count(_COUNTER_ALIASES.get(str(name), f"{name}Count"), value)

    def _handle_batch_processed(self, event: Event, session: "Session") -> None:
        total_processed = event.get("total_processed")
        remaining = event.get("remaining")
        self._count(PROCESSED, total_processed)
        if remaining is not None:
            self._message(session, f"{total_processed} processed, {remaining} remaining")
        LOGGER.debug("Batch of %s transactions processed; total %s", event.get("batch_size"), total_processed)

    # ------------------------------------------------------------------
    # Legacy and fallback
    # ------------------------------------------------------------------

    def _handle_legacy_progress(self, event: Event, session: "Session") -> None:
        self._progress(session, _coerce_progress(event.get("progress")))
        step = event.get("step")
        message = event.get("message") or step
        if isinstance(step, str) and step:
            self._step(session, step, str(message))
        else:
            self._message(session, message)

        if event.get("conciliated_count") is not None:
            self._count(MATCHES, event.get("conciliated_count"))
            self._count(PROCESSED, event.get("processed_count"))

    def _handle_generic(self, event: Event, session: "Session") -> None:
        self._progress(session, _coerce_progress(event.get("progress")))
        self._message(session, _first_present(event.fields, "message", "step"))


def _percent_fraction(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        return None
