"""Lookahead scheduler — picks the next paragraph to generate and issues it.

The TTS backend serialises requests, so exactly one Generation Port call may
be outstanding.  The scheduler fills the nearest gap ahead of the cursor
first: a missing paragraph far ahead is useless if the very next one is
missing.

Failures are counted per paragraph.  A failed paragraph becomes eligible
again on the next ``decide_next`` until it has failed ``max_retries + 1``
times, after which it is exhausted and the scan stops in front of it.
The scheduler never retries on its own; the controller drives every issue.

The port call runs as its own task.  Timeouts and cancellation end the
request early, but the slot stays occupied until the port call itself
returns.  Ports that set ``supports_cancellation`` have the call cancelled;
any other port is left to finish, and its late result is handed back as an
abandoned outcome so the owner can store or release the handle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Container
from dataclasses import dataclass

from readaloud.adapters.generation.base import AudioHandle, GenerationPort
from readaloud.config import GenerationSettings
from readaloud.errors import GenerationError
from readaloud.logging import get_logger, log_extra
from readaloud.metrics import GenerationMetrics, MetricsCollector

logger = get_logger("playback.scheduler")


@dataclass
class GenerationOutcome:
    """Result of one settled Generation Port request.

    ``late`` outcomes come from a port call that returned after its request
    was already reported (cancelled or timed out); they are always abandoned.
    """

    index: int
    attempt: int
    audio: AudioHandle | None = None
    error: GenerationError | None = None
    abandoned: bool = False
    exhausted: bool = False
    late: bool = False

    @property
    def ok(self) -> bool:
        return self.audio is not None


SettledCallback = Callable[[GenerationOutcome], None]


@dataclass
class _InFlight:
    index: int
    attempt: int
    metrics: GenerationMetrics
    on_settled: SettledCallback
    task: asyncio.Task[AudioHandle] | None = None
    port_task: asyncio.Task[AudioHandle] | None = None
    abandoned: bool = False


class LookaheadScheduler:
    """Single-slot generation scheduler with bounded per-paragraph retries."""

    def __init__(
        self,
        port: GenerationPort,
        *,
        max_retries: int = 2,
        timeout_s: float = 30.0,
        retry_backoff_s: float = 0.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._port = port
        self.max_retries = max_retries
        self.timeout_s = timeout_s
        self.retry_backoff_s = retry_backoff_s
        self.metrics = metrics or MetricsCollector(enabled=False)
        self._failures: dict[int, int] = {}
        self._in_flight: _InFlight | None = None

    # ── State ─────────────────────────────────────────────

    @property
    def is_busy(self) -> bool:
        """True while the single request slot is occupied."""
        return self._in_flight is not None

    @property
    def in_flight_index(self) -> int | None:
        return self._in_flight.index if self._in_flight else None

    @property
    def in_flight_task(self) -> asyncio.Task[AudioHandle] | None:
        return self._in_flight.task if self._in_flight else None

    @property
    def cancels_port_calls(self) -> bool:
        return bool(getattr(self._port, "supports_cancellation", False))

    def failures(self, index: int) -> int:
        return self._failures.get(index, 0)

    def is_exhausted(self, index: int) -> bool:
        return self._failures.get(index, 0) > self.max_retries

    def reset_failures(self) -> None:
        self._failures.clear()

    # ── Decision ──────────────────────────────────────────

    def decide_next(
        self,
        cursor: int,
        buffered: Container[int],
        total: int,
        target: int,
    ) -> int | None:
        """Return the nearest paragraph in the lookahead window needing audio.

        The window runs from ``cursor`` (inclusive) to
        ``min(cursor + target, total - 1)``.  Returns None when the window is
        covered, the slot is busy, or an exhausted paragraph blocks the way.
        """
        if self.is_busy or cursor < 0 or cursor >= total:
            return None
        end = min(cursor + target, total - 1)
        for index in range(cursor, end + 1):
            if index in buffered:
                continue
            if self.is_exhausted(index):
                return None
            return index
        return None

    # ── Issue / settle ────────────────────────────────────

    def issue(
        self,
        index: int,
        text: str,
        settings: GenerationSettings,
        on_settled: SettledCallback,
    ) -> asyncio.Task[AudioHandle]:
        """Start generating ``index``.  The slot frees when the port call returns."""
        if self._in_flight is not None:
            raise RuntimeError(
                f"Generation already in flight for paragraph {self._in_flight.index}"
            )
        attempt = self.failures(index) + 1
        in_flight = _InFlight(
            index=index,
            attempt=attempt,
            metrics=self.metrics.request_started(index, attempt),
            on_settled=on_settled,
        )
        self._in_flight = in_flight
        task = asyncio.create_task(self._generate(in_flight, text, settings))
        in_flight.task = task
        task.add_done_callback(lambda t: self._settle(in_flight))
        logger.info(
            "Generating paragraph %d",
            index + 1,
            extra=log_extra(paragraph_index=index, attempt=attempt, event="generate"),
        )
        return task

    def cancel_in_flight(self) -> None:
        """Withdraw interest in the in-flight request.

        The slot stays occupied until the port call actually returns.
        """
        in_flight = self._in_flight
        if in_flight is None or in_flight.abandoned:
            return
        in_flight.abandoned = True
        if in_flight.task is not None:
            in_flight.task.cancel()
        logger.debug(
            "In-flight generation cancelled",
            extra=log_extra(paragraph_index=in_flight.index, event="generate_cancel"),
        )

    async def wait_idle(self) -> None:
        """Wait until the slot is free, including any abandoned port call."""
        while self._in_flight is not None:
            pending = [
                t for t in (self._in_flight.task, self._in_flight.port_task) if t is not None
            ]
            await asyncio.gather(*pending, return_exceptions=True)
            # let the done callbacks run
            await asyncio.sleep(0)

    async def _generate(
        self,
        in_flight: _InFlight,
        text: str,
        settings: GenerationSettings,
    ) -> AudioHandle:
        index = in_flight.index
        if in_flight.attempt > 1 and self.retry_backoff_s > 0:
            await asyncio.sleep(self.retry_backoff_s * 2 ** (in_flight.attempt - 2))
        port_task = asyncio.create_task(self._port.generate(index, text, settings))
        in_flight.port_task = port_task
        try:
            async with asyncio.timeout(self.timeout_s):
                return await asyncio.shield(port_task)
        except TimeoutError as exc:
            self._withdraw(port_task)
            raise GenerationError(
                "timeout", f"No audio after {self.timeout_s}s", index
            ) from exc
        except asyncio.CancelledError:
            self._withdraw(port_task)
            raise

    def _withdraw(self, port_task: asyncio.Task[AudioHandle]) -> None:
        if self.cancels_port_calls:
            port_task.cancel()

    def _settle(self, in_flight: _InFlight) -> None:
        assert self._in_flight is in_flight and in_flight.task is not None
        port_task = in_flight.port_task
        if port_task is not None and not port_task.done():
            # the backend is still working; hold the slot until it returns
            port_task.add_done_callback(lambda t: self._settle_late(in_flight))
        else:
            self._in_flight = None
        in_flight.on_settled(self._outcome(in_flight))

    def _settle_late(self, in_flight: _InFlight) -> None:
        assert self._in_flight is in_flight and in_flight.port_task is not None
        self._in_flight = None
        port_task = in_flight.port_task
        audio = None
        if not port_task.cancelled():
            exc = port_task.exception()
            if exc is None:
                audio = port_task.result()
            logger.debug(
                "Abandoned generation returned%s",
                f" with error: {exc}" if exc else "",
                extra=log_extra(paragraph_index=in_flight.index, event="generate_late"),
            )
        in_flight.on_settled(
            GenerationOutcome(
                index=in_flight.index,
                attempt=in_flight.attempt,
                audio=audio,
                abandoned=True,
                late=True,
            )
        )

    def _outcome(self, in_flight: _InFlight) -> GenerationOutcome:
        task = in_flight.task
        assert task is not None
        index = in_flight.index
        in_flight.metrics.settled_at = self.metrics.now()

        if task.cancelled():
            in_flight.metrics.outcome = "cancelled"
            return GenerationOutcome(index=index, attempt=in_flight.attempt, abandoned=True)

        exc = task.exception()
        if exc is None:
            in_flight.metrics.outcome = "ok"
            self._failures.pop(index, None)
            return GenerationOutcome(
                index=index,
                attempt=in_flight.attempt,
                audio=task.result(),
                abandoned=in_flight.abandoned,
            )

        if isinstance(exc, GenerationError):
            error = exc
        else:
            logger.error(
                "Generation port raised unexpected %s",
                type(exc).__name__,
                exc_info=exc,
                extra=log_extra(paragraph_index=index),
            )
            error = GenerationError("server", str(exc) or type(exc).__name__, index)
        if error.index is None:
            error.index = index

        in_flight.metrics.outcome = "failed"
        if in_flight.abandoned:
            # failure of a request nobody wants any more is not charged
            return GenerationOutcome(
                index=index, attempt=in_flight.attempt, error=error, abandoned=True
            )

        self._failures[index] = self._failures.get(index, 0) + 1
        exhausted = self.is_exhausted(index)
        logger.log(
            logging.ERROR if exhausted else logging.WARNING,
            "Generation failed for paragraph %d (%s)%s",
            index + 1,
            error,
            ", giving up" if exhausted else "",
            extra=log_extra(
                paragraph_index=index,
                attempt=in_flight.attempt,
                event="generate_failed",
                error_code=error.kind,
            ),
        )
        return GenerationOutcome(
            index=index,
            attempt=in_flight.attempt,
            error=error,
            exhausted=exhausted,
        )
