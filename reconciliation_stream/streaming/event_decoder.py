"""SSE block decoding into typed events.

This module handles:
- EventKind: the closed set of event kinds the backend emits, plus UNKNOWN
- Event: kind + verbatim fields + receive timestamp
- EventDecoder: ``data:`` line extraction and JSON parsing

A malformed payload never raises: it is logged, reported through the
``on_malformed`` callback and decoded as ``None`` so the stream continues.
"""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .frame_reader import Block

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data: "

MalformedCallback = Callable[[Block, str], None]


class EventKind(str, Enum):
    """Every event kind the reconciliation backend is known to emit."""

    # Upload and file analysis
    FILE_UPLOADED = "file_uploaded"
    FILE_VALIDATED = "file_validated"
    EXTRACTING_TRANSACTIONS = "extracting_transactions"
    TRANSACTIONS_EXTRACTED = "transactions_extracted"
    FILE_ANALYSIS_COMPLETE = "file_analysis_complete"

    # Backend data
    LOADING_BACKEND_DATA = "loading_mongo_data"
    BACKEND_DATA_LOADED = "mongo_data_loaded"

    # Matching
    PROCESSING_MATCHES = "processing_matches"
    MATCHES_PROCESSED = "matches_processed"
    LLM_ANALYSIS_COMPLETE = "llm_analysis_complete"

    # Terminal
    RECONCILIATION_COMPLETE = "reconciliation_complete"
    ERROR = "error"

    # Live processing
    TRANSACTION_PROGRESS = "transaction_progress"
    PROCESSING_PROGRESS = "processing_progress"
    TRANSACTION_PROCESSING = "transaction_processing"
    MATCH_FOUND = "match_found"
    COUNTER_UPDATE = "counter_update"
    BATCH_PROCESSED = "batch_processed"

    # Legacy
    PROGRESS = "progress"
    COMPLETE = "complete"

    # Anything the client was released without knowing about
    UNKNOWN = "__unknown__"

    @classmethod
    def parse(cls, raw_type: Any) -> "EventKind":
        """Map a wire ``type`` value onto a kind, falling back to UNKNOWN."""
        if not isinstance(raw_type, str) or raw_type == cls.UNKNOWN.value:
            return cls.UNKNOWN
        try:
            return cls(raw_type)
        except ValueError:
            return cls.UNKNOWN


@dataclass(slots=True)
class Event:
    """One decoded stream event."""

    kind: EventKind
    raw_type: str
    fields: dict[str, Any]
    received_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.timezone.utc)
    )

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


class EventDecoder:
    """Extracts the JSON payload from a block and builds an ``Event``."""

    def __init__(self, *, on_malformed: Optional[MalformedCallback] = None) -> None:
        self._on_malformed = on_malformed
        self.malformed_count = 0

    def decode(self, block: Block) -> Optional[Event]:
        """Return the block's event, or None when it carries no usable payload."""
        data_line = next((line for line in block.lines if line.startswith(DATA_PREFIX)), None)
        if data_line is None:
            LOGGER.debug("SSE block without data line ignored: %.120r", block.text)
            return None

        payload_text = data_line[len(DATA_PREFIX):].strip()
        if not payload_text:
            return None

        try:
            payload = json.loads(payload_text)
        except json.JSONDecodeError as exc:
            self._report_malformed(block, f"invalid JSON: {exc}")
            return None
        if not isinstance(payload, dict):
            self._report_malformed(block, f"payload is {type(payload).__name__}, expected object")
            return None

        raw_type = payload.pop("type", None)
        kind = EventKind.parse(raw_type)
        return Event(
            kind=kind,
            raw_type=raw_type if isinstance(raw_type, str) else "",
            fields=payload,
        )

    def _report_malformed(self, block: Block, reason: str) -> None:
        self.malformed_count += 1
        LOGGER.warning("Skipping malformed SSE block (%s): %.200r", reason, block.text)
        if self._on_malformed is None:
            return
        try:
            self._on_malformed(block, reason)
        except Exception:
            LOGGER.error("Malformed-block callback failed", exc_info=True)


_DEFAULT_DECODER = EventDecoder()


def decode(block: Block) -> Optional[Event]:
    """Decode ``block`` with a shared decoder that only logs malformed payloads."""
    return _DEFAULT_DECODER.decode(block)
