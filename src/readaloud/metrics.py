"""Latency and stall metrics for buffered playback."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from readaloud.logging import get_logger, log_extra

logger = get_logger("metrics")


@dataclass
class GenerationMetrics:
    """Timing for a single Generation Port request."""

    index: int
    attempt: int = 1
    requested_at: float = 0.0
    settled_at: float = 0.0
    outcome: str = "pending"

    @property
    def latency_ms(self) -> float:
        """Request issue to settle latency in milliseconds."""
        if self.requested_at and self.settled_at:
            return (self.settled_at - self.requested_at) * 1000
        return 0.0


@dataclass
class PlaybackMetrics:
    """Per-session playback metrics."""

    session_id: str = ""
    started_at: float = 0.0
    first_audio_at: float = 0.0
    stall_count: int = 0
    stall_total_s: float = 0.0
    paragraphs_played: int = 0
    _stall_started_at: float = 0.0

    @property
    def time_to_first_audio_ms(self) -> float:
        """START to first rendered paragraph latency."""
        if self.started_at and self.first_audio_at:
            return (self.first_audio_at - self.started_at) * 1000
        return 0.0

    @property
    def is_stalled(self) -> bool:
        return bool(self._stall_started_at)

    def stall_started(self, at: float) -> None:
        if not self._stall_started_at:
            self.stall_count += 1
            self._stall_started_at = at

    def stall_ended(self, at: float) -> None:
        if self._stall_started_at:
            self.stall_total_s += at - self._stall_started_at
            self._stall_started_at = 0.0


@dataclass
class MetricsCollector:
    """Accumulates per-session generation and playback metrics."""

    session_id: str = ""
    enabled: bool = True
    requests: list[GenerationMetrics] = field(default_factory=list)
    playback: PlaybackMetrics = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.playback is None:
            self.playback = PlaybackMetrics(session_id=self.session_id)

    def request_started(self, index: int, attempt: int) -> GenerationMetrics:
        m = GenerationMetrics(index=index, attempt=attempt, requested_at=self.now())
        if self.enabled:
            self.requests.append(m)
        return m

    def summary(self) -> dict[str, Any]:
        settled = [m for m in self.requests if m.outcome == "ok"]
        avg_latency = (
            sum(m.latency_ms for m in settled) / len(settled) if settled else 0.0
        )
        return {
            "requests": len(self.requests),
            "failed_requests": sum(1 for m in self.requests if m.outcome == "failed"),
            "avg_generation_ms": round(avg_latency, 1),
            "time_to_first_audio_ms": round(self.playback.time_to_first_audio_ms, 1),
            "stall_count": self.playback.stall_count,
            "stall_total_s": round(self.playback.stall_total_s, 2),
            "paragraphs_played": self.playback.paragraphs_played,
        }

    def emit(self) -> None:
        """Log the session metrics summary."""
        if not self.enabled:
            return
        logger.info(
            "Session metrics: %s",
            self.summary(),
            extra=log_extra(session_id=self.session_id, event="metrics"),
        )

    @staticmethod
    def now() -> float:
        """Return monotonic timestamp for latency measurement."""
        return time.monotonic()
