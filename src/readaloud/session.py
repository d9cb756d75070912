"""Reading session: the paragraph sequence and metrics for one loaded document."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from readaloud.logging import get_logger, log_extra
from readaloud.metrics import MetricsCollector

logger = get_logger("session")


@dataclass
class ReadingSession:
    """One loaded document.

    The paragraph sequence is immutable for the session's lifetime; loading
    a new document replaces the whole session.
    """

    paragraphs: tuple[str, ...] = ()
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    metrics_enabled: bool = True
    metrics: MetricsCollector = field(default=None)  # type: ignore[assignment]
    closed: bool = False

    def __post_init__(self) -> None:
        self.paragraphs = tuple(self.paragraphs)
        if self.metrics is None:
            self.metrics = MetricsCollector(
                session_id=self.session_id, enabled=self.metrics_enabled
            )
        logger.info(
            "Session opened with %d paragraphs",
            len(self.paragraphs),
            extra=log_extra(session_id=self.session_id, event="session_open"),
        )

    @classmethod
    def open(cls, paragraphs: Sequence[str], *, metrics_enabled: bool = True) -> ReadingSession:
        return cls(paragraphs=tuple(paragraphs), metrics_enabled=metrics_enabled)

    @property
    def total_paragraphs(self) -> int:
        return len(self.paragraphs)

    def text(self, index: int) -> str:
        return self.paragraphs[index]

    def close(self) -> None:
        """Emit metrics once; later calls are no-ops."""
        if self.closed:
            return
        self.closed = True
        self.metrics.emit()
        logger.info(
            "Session closed",
            extra=log_extra(session_id=self.session_id, event="session_close"),
        )
