"""Tests for reading sessions, metrics and structured logging."""

from __future__ import annotations

import json
import logging

import pytest

from readaloud.logging import StructuredFormatter, log_extra
from readaloud.metrics import MetricsCollector, PlaybackMetrics
from readaloud.session import ReadingSession


class TestReadingSession:
    def test_open(self):
        session = ReadingSession.open(["a", "b"])
        assert session.total_paragraphs == 2
        assert session.text(1) == "b"
        assert session.metrics.session_id == session.session_id

    def test_close_is_idempotent(self, caplog):
        session = ReadingSession.open(["a"])
        with caplog.at_level(logging.INFO, logger="readaloud"):
            session.close()
            session.close()
        assert session.closed
        assert sum("Session closed" in r.getMessage() for r in caplog.records) == 1


class TestMetrics:
    def test_stall_accounting(self):
        playback = PlaybackMetrics()
        playback.stall_started(10.0)
        playback.stall_started(11.0)
        assert playback.is_stalled
        playback.stall_ended(12.5)
        playback.stall_ended(13.0)
        assert playback.stall_count == 1
        assert playback.stall_total_s == pytest.approx(2.5)

    def test_time_to_first_audio(self):
        playback = PlaybackMetrics(started_at=1.0, first_audio_at=1.25)
        assert playback.time_to_first_audio_ms == pytest.approx(250.0)

    def test_disabled_collector_records_nothing(self):
        metrics = MetricsCollector(enabled=False)
        metrics.request_started(0, 1)
        assert metrics.requests == []


class TestStructuredLogging:
    def test_json_line_carries_context(self):
        record = logging.LogRecord("readaloud.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
        for key, value in log_extra(session_id="abc", paragraph_index=3, attempt=None).items():
            setattr(record, key, value)

        entry = json.loads(StructuredFormatter().format(record))
        assert entry["message"] == "hello x"
        assert entry["session_id"] == "abc"
        assert entry["paragraph_index"] == 3
        assert "attempt" not in entry

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            log_extra(room="nope")
