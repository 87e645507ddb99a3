"""Tests for event_emitter.py (sink isolation and value shaping)."""

from __future__ import annotations

import logging

from conftest import RecordingSink

from reconciliation_stream.streaming.event_emitter import (
    STEP_INDEX,
    LoggingSink,
    PresentationEmitter,
    PresentationSink,
)


class _ExplodingSink(RecordingSink):
    def update_progress(self, percent: int) -> None:
        raise RuntimeError("renderer crashed")


def test_sink_failure_is_logged_and_swallowed(caplog):
    sink = _ExplodingSink()
    emitter = PresentationEmitter(sink)

    with caplog.at_level(logging.ERROR):
        emitter.emit_progress(0.5)
        emitter.emit_state("streaming")

    assert sink.states() == ["streaming"]
    assert "Failed to emit update_progress" in caplog.text


def test_progress_is_clamped_and_rounded_to_percent(sink: RecordingSink):
    emitter = PresentationEmitter(sink)

    emitter.emit_progress(0.456)
    emitter.emit_progress(1.7)
    emitter.emit_progress(-0.2)

    assert [call[1] for call in sink.of("progress")] == [46, 100, 0]


def test_step_index_comes_from_step_table(sink: RecordingSink):
    emitter = PresentationEmitter(sink)

    emitter.emit_step("processing_matches", "Matching...")
    emitter.emit_step("something_new", "Unknown step")

    assert sink.of("step") == [
        ("step", "processing_matches", STEP_INDEX["processing_matches"], "Matching..."),
        ("step", "something_new", 0, "Unknown step"),
    ]


def test_counter_highlight_is_forwarded(sink: RecordingSink):
    PresentationEmitter(sink).emit_counter("matchesCount", 7, highlight=True)

    assert sink.of("counter") == [("counter", "matchesCount", 7, True)]


def test_default_sink_only_logs(caplog):
    emitter = PresentationEmitter()

    assert isinstance(emitter.sink, LoggingSink)
    assert isinstance(emitter.sink, PresentationSink)

    with caplog.at_level(logging.ERROR):
        emitter.emit_error("Bank file corrupt")

    assert "Bank file corrupt" in caplog.text
