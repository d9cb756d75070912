"""Buffered playback controller — ties the buffer, scheduler and state machine together.

Every state-relevant event (user command, generation settle, renderer
``ended``/``error``) runs the same pipeline:

1. update the buffer store (evict behind the cursor)
2. derive ``BufferStatus`` from the store and cursor
3. ask the scheduler for the next paragraph and issue it if the slot is free
4. evaluate the state machine's guards and carry out its effects
5. notify observers if the snapshot changed

Commands never block: they mutate state synchronously and the rest follows
from generation and renderer events on the same event loop.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Sequence

from readaloud.adapters.generation.base import AudioHandle, GenerationPort
from readaloud.adapters.render.base import AudioRenderer
from readaloud.config import BufferedPlaybackConfig, GenerationSettings, Settings
from readaloud.errors import ConfigError, GenerationError, RenderError, StateError
from readaloud.logging import get_logger, log_extra
from readaloud.playback.buffer_store import BufferStore
from readaloud.playback.scheduler import GenerationOutcome, LookaheadScheduler
from readaloud.playback.state_machine import (
    Effect,
    Guards,
    PlaybackEvent,
    PlaybackStateMachine,
    PlaybackStatus,
    Transition,
)
from readaloud.playback.status import BufferStatus, PlaybackSnapshot, derive_buffer_status
from readaloud.session import ReadingSession

logger = get_logger("playback.controller")

Observer = Callable[[PlaybackSnapshot], None]

E = PlaybackEvent
S = PlaybackStatus


class BufferedPlaybackController:
    """Generates paragraphs ahead of the listener and drives playback.

    Owns the buffer store, cursor and scheduler exclusively; observers only
    ever see consistent ``PlaybackSnapshot`` values.
    """

    def __init__(
        self,
        port: GenerationPort,
        renderer: AudioRenderer,
        paragraphs: Sequence[str] = (),
        *,
        config: BufferedPlaybackConfig | None = None,
        settings: GenerationSettings | None = None,
        retain_behind: int = 1,
        max_retries: int = 2,
        generation_timeout_s: float = 30.0,
        retry_backoff_s: float = 0.0,
        metrics_enabled: bool = True,
    ) -> None:
        self._renderer = renderer
        self._config = config or BufferedPlaybackConfig()
        self._settings = settings or GenerationSettings()
        self._metrics_enabled = metrics_enabled
        self._session = ReadingSession.open(paragraphs, metrics_enabled=metrics_enabled)
        self._store = BufferStore(retain_behind=retain_behind)
        self._scheduler = LookaheadScheduler(
            port,
            max_retries=max_retries,
            timeout_s=generation_timeout_s,
            retry_backoff_s=retry_backoff_s,
            metrics=self._session.metrics,
        )
        self._machine = PlaybackStateMachine()
        self._machine.session_id = self._session.session_id

        self._cursor = 0
        self._error: str | None = None
        self._last_errors: dict[int, GenerationError] = {}
        # bumped whenever in-flight results must be thrown away on arrival
        self._epoch = 0
        # bumped whenever renderer callbacks from earlier renders become stale
        self._render_token = 0
        self._rendering: int | None = None
        self._closed = False

        self._observers: list[Observer] = []
        self._last_snapshot: PlaybackSnapshot | None = None
        self._status_key: tuple[object, ...] | None = None
        self._status_cache: BufferStatus | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        port: GenerationPort,
        renderer: AudioRenderer,
        paragraphs: Sequence[str] = (),
    ) -> BufferedPlaybackController:
        return cls(
            port,
            renderer,
            paragraphs,
            config=BufferedPlaybackConfig.from_settings(settings),
            settings=GenerationSettings.from_settings(settings),
            retain_behind=settings.buffer_retain_behind,
            max_retries=settings.generation_max_retries,
            generation_timeout_s=settings.generation_timeout_s,
            retry_backoff_s=settings.generation_retry_backoff_s,
            metrics_enabled=settings.metrics_enabled,
        )

    # ── Read side ─────────────────────────────────────────

    @property
    def status(self) -> PlaybackStatus:
        return self._machine.status

    @property
    def current_index(self) -> int:
        return self._cursor

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def config(self) -> BufferedPlaybackConfig:
        return self._config

    @property
    def settings(self) -> GenerationSettings:
        return self._settings

    @property
    def session(self) -> ReadingSession:
        return self._session

    @property
    def total_paragraphs(self) -> int:
        return self._session.total_paragraphs

    @property
    def is_active(self) -> bool:
        return self._machine.is_active

    @property
    def buffer_status(self) -> BufferStatus:
        key = (
            self._session.session_id,
            self._store.version,
            self._cursor,
            self._scheduler.in_flight_index,
            self._config,
        )
        if self._status_cache is None or key != self._status_key:
            self._status_key = key
            self._status_cache = derive_buffer_status(
                cursor=self._cursor,
                generated=self._store.snapshot_generated_indices(),
                total=self.total_paragraphs,
                target_buffer=self._config.target_buffer_size,
                min_buffer=self._config.min_buffer_size,
                generating_index=self._scheduler.in_flight_index,
            )
        return self._status_cache

    @property
    def snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(
            status=self._machine.status,
            buffer_status=self.buffer_status,
            current_index=self._cursor,
            error=self._error,
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` for snapshots; returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def generated_audio(self) -> dict[int, AudioHandle]:
        """Buffered handles by paragraph index, for session checkpoints."""
        return {entry.index: entry.audio for entry in self._store.entries()}

    # ── Commands ──────────────────────────────────────────

    def start(self, from_index: int = 0) -> None:
        if not self._valid_index("start", from_index) or not self._accepts("start", E.START):
            return
        logger.info(
            "Starting from paragraph %d",
            from_index + 1,
            extra=self._extra(paragraph_index=from_index, event="start"),
        )
        self._error = None
        self._last_errors.clear()
        self._scheduler.reset_failures()
        self._retarget(from_index)
        self._mark_started()
        self._apply(self._machine.send(E.START))
        self._refresh()

    def pause(self) -> None:
        if not self._accepts("pause", E.PAUSE):
            return
        self._apply(self._machine.send(E.PAUSE))
        self._refresh()

    def resume(self) -> None:
        if not self._accepts("resume", E.RESUME):
            return
        self._apply(self._machine.send(E.RESUME, self._guards()))
        self._refresh()

    def stop(self) -> None:
        if not self._accepts("stop", E.STOP):
            return
        self._reset_playback()
        self._refresh()

    def seek(self, index: int) -> None:
        if not self._valid_index("seek", index) or not self._accepts("seek", E.SEEK):
            return
        logger.info(
            "Seeking to paragraph %d",
            index + 1,
            extra=self._extra(paragraph_index=index, event="seek"),
        )
        if self._machine.status in (S.IDLE, S.COMPLETED):
            self._mark_started()
        self._last_errors.clear()
        self._scheduler.reset_failures()
        if self._rendering is not None:
            # the clip being played may be evicted below
            self._stop_render()
        self._retarget(index)
        self._apply(self._machine.send(E.SEEK, self._guards()))
        self._refresh()

    def update_config(self, **partial: int) -> None:
        """Apply a partial ``BufferedPlaybackConfig``.

        Raises:
            ConfigError: if the merged bounds are invalid; the old config stays.
        """
        if not self._open("update_config"):
            return
        try:
            config = self._config.merged(**partial)
        except ConfigError as exc:
            logger.warning(
                "Buffer config rejected: %s", exc, extra=self._extra(event="config_rejected")
            )
            raise
        if config == self._config:
            return
        self._config = config
        logger.info(
            "Buffer config updated: target=%d min=%d",
            config.target_buffer_size,
            config.min_buffer_size,
            extra=self._extra(event="config_updated"),
        )
        self._refresh()

    def update_paragraphs(self, paragraphs: Sequence[str]) -> None:
        """Load a new document; the old buffer and session are discarded."""
        if not self._open("update_paragraphs"):
            return
        if self._machine.status is not S.IDLE:
            self._reset_playback()
        else:
            self._discard_buffer()
            self._cursor = 0
        self._session.close()
        self._session = ReadingSession.open(paragraphs, metrics_enabled=self._metrics_enabled)
        self._scheduler.metrics = self._session.metrics
        self._machine.session_id = self._session.session_id
        self._refresh()

    def update_settings(self, settings: GenerationSettings) -> None:
        """Change voice parameters; audio generated with the old ones is dropped."""
        if not self._open("update_settings") or settings == self._settings:
            return
        self._settings = settings
        logger.info(
            "Generation settings changed, discarding %d buffered paragraphs",
            len(self._store),
            extra=self._extra(event="settings_changed"),
        )
        if self._machine.can_accept(E.INVALIDATE):
            self._apply(self._machine.send(E.INVALIDATE))
        self._discard_buffer()
        self._refresh()

    def clear_error(self) -> None:
        if not self._accepts("clear_error", E.CLEAR_ERROR):
            return
        self._error = None
        self._apply(self._machine.send(E.CLEAR_ERROR))
        self._refresh()

    def seed(self, index: int, audio: AudioHandle) -> None:
        """Insert audio generated elsewhere, e.g. restored from a saved session."""
        if not self._open("seed") or not self._valid_index("seed", index):
            return
        self._store.put(index, audio)
        self._refresh()

    async def close(self) -> None:
        """Stop playback, settle any in-flight request and release every handle."""
        if self._closed:
            return
        self._closed = True
        if self._machine.status is not S.IDLE:
            self._apply(self._machine.send(E.STOP))
        self._epoch += 1
        self._scheduler.cancel_in_flight()
        await self._scheduler.wait_idle()
        self._stop_render()
        self._store.clear()
        self._session.close()
        self._emit()
        self._observers.clear()

    # ── Event handlers ────────────────────────────────────

    def _on_generation_settled(self, epoch: int, outcome: GenerationOutcome) -> None:
        if epoch != self._epoch:
            if outcome.audio is not None:
                outcome.audio.release()
            logger.debug(
                "Discarding result from an earlier playback cycle",
                extra=self._extra(paragraph_index=outcome.index, event="generate_stale"),
            )
        elif outcome.audio is not None:
            if self._in_window(outcome.index):
                self._store.put(outcome.index, outcome.audio)
                logger.info(
                    "Paragraph %d ready",
                    outcome.index + 1,
                    extra=self._extra(paragraph_index=outcome.index, event="generated"),
                )
            else:
                outcome.audio.release()
                logger.debug(
                    "Result fell outside the retained window",
                    extra=self._extra(paragraph_index=outcome.index, event="generate_stale"),
                )
        elif outcome.error is not None and not outcome.abandoned:
            self._last_errors[outcome.index] = outcome.error
        self._refresh()

    def _on_audio_ended(self, token: int) -> None:
        if token != self._render_token or not self._machine.can_accept(E.AUDIO_ENDED):
            logger.debug("Ignoring stale ended event", extra=self._extra(event="render_stale"))
            return
        ended = self._cursor
        self._rendering = None
        self._session.metrics.playback.paragraphs_played += 1
        at_end = ended >= self.total_paragraphs - 1
        if not at_end:
            self._cursor = ended + 1
            self._store.evict_before(self._cursor)
        self._apply(self._machine.send(E.AUDIO_ENDED, self._guards(at_end=at_end)))
        self._refresh()

    def _on_render_error(self, token: int, exc: Exception) -> None:
        if token != self._render_token:
            logger.debug("Ignoring stale render error", extra=self._extra(event="render_stale"))
            return
        self._rendering = None
        self._fail(
            E.RENDER_FAILED,
            f"Playback failed for paragraph {self._cursor + 1}: {exc}",
            error_code="render",
        )
        self._refresh()

    # ── Pipeline ──────────────────────────────────────────

    def _refresh(self) -> None:
        self._store.evict_before(self._cursor)
        if self._machine.is_active and not self._closed:
            self._pump()
        self._evaluate()
        self._emit()

    def _pump(self) -> None:
        index = self._scheduler.decide_next(
            self._cursor,
            self._store,
            self.total_paragraphs,
            self._config.target_buffer_size,
        )
        if index is None:
            return
        self._scheduler.issue(
            index,
            self._session.text(index),
            self._settings,
            functools.partial(self._on_generation_settled, self._epoch),
        )

    def _evaluate(self) -> None:
        status = self._machine.status
        if not self._machine.is_active:
            return
        if not self._store.has(self._cursor) and self._scheduler.is_exhausted(self._cursor):
            error = self._last_errors.get(self._cursor)
            self._fail(
                E.GENERATION_FAILED,
                f"Failed to generate paragraph {self._cursor + 1}: {error or 'retries exhausted'}",
                error_code=error.kind if error else None,
            )
            return
        if status in (S.INITIAL_BUFFERING, S.BUFFERING):
            guards = self._guards()
            if guards.can_play:
                self._apply(self._machine.send(E.BUFFER_READY, guards))

    def _emit(self) -> None:
        snapshot = self.snapshot
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception as exc:
                logger.warning(
                    "Observer raised: %s", exc, exc_info=True, extra=self._extra(event="observer_error")
                )

    # ── Effects ───────────────────────────────────────────

    def _apply(self, transition: Transition) -> None:
        now = self._session.metrics.now()
        if transition.changed:
            playback = self._session.metrics.playback
            if transition.target is S.BUFFERING:
                playback.stall_started(now)
            elif transition.source is S.BUFFERING:
                playback.stall_ended(now)
        for effect in transition.effects:
            if effect is Effect.RENDER:
                self._render_cursor()
            elif effect is Effect.PAUSE_RENDER:
                if self._rendering is not None:
                    self._renderer.pause()
            elif effect is Effect.RESUME_RENDER:
                self._renderer.resume()
            elif effect is Effect.STOP_RENDER:
                self._stop_render()

    def _render_cursor(self) -> None:
        handle = self._store.get(self._cursor)
        if handle is None:
            raise RuntimeError(f"No audio buffered for paragraph {self._cursor + 1}")
        self._render_token += 1
        token = self._render_token
        self._rendering = self._cursor
        playback = self._session.metrics.playback
        if not playback.first_audio_at:
            playback.first_audio_at = self._session.metrics.now()
        logger.info(
            "Playing paragraph %d",
            self._cursor + 1,
            extra=self._extra(paragraph_index=self._cursor, event="render"),
        )
        try:
            self._renderer.render(
                handle,
                lambda: self._on_audio_ended(token),
                lambda exc: self._on_render_error(token, exc),
            )
        except RenderError as exc:
            self._on_render_error(token, exc)

    def _stop_render(self) -> None:
        self._render_token += 1
        self._rendering = None
        self._renderer.stop()

    # ── Helpers ───────────────────────────────────────────

    def _guards(self, *, at_end: bool = False) -> Guards:
        remaining = self.total_paragraphs - self._cursor
        needed = min(self._config.min_buffer_size, remaining)
        ready = self.buffer_status.buffer_size
        # nothing more will arrive past an exhausted paragraph; play what is there
        blocked = ready > 0 and self._scheduler.is_exhausted(self._cursor + ready)
        return Guards(
            cursor_ready=self._store.has(self._cursor),
            buffer_sufficient=remaining > 0 and (ready >= needed or blocked),
            at_end=at_end,
            render_in_progress=self._rendering is not None,
        )

    def _window(self, cursor: int) -> tuple[int, int]:
        return cursor - self._store.retain_behind, cursor + self._config.target_buffer_size

    def _in_window(self, index: int) -> bool:
        low, high = self._window(self._cursor)
        return low <= index <= high

    def _retarget(self, index: int) -> None:
        """Move the cursor, keeping only audio within the window around it."""
        self._cursor = index
        low, high = self._window(index)
        in_flight = self._scheduler.in_flight_index
        if in_flight is not None and not low <= in_flight <= high:
            self._scheduler.cancel_in_flight()
        self._store.evict_outside(low, high)

    def _discard_buffer(self) -> None:
        self._epoch += 1
        self._scheduler.cancel_in_flight()
        self._scheduler.reset_failures()
        self._last_errors.clear()
        self._store.clear()

    def _reset_playback(self) -> None:
        self._apply(self._machine.send(E.STOP))
        self._discard_buffer()
        self._cursor = 0
        self._error = None

    def _mark_started(self) -> None:
        playback = self._session.metrics.playback
        playback.started_at = self._session.metrics.now()
        playback.first_audio_at = 0.0

    def _fail(self, event: PlaybackEvent, message: str, *, error_code: str | None = None) -> None:
        if not self._machine.can_accept(event):
            return
        self._error = message
        self._scheduler.cancel_in_flight()
        logger.error(
            "%s",
            message,
            extra=self._extra(paragraph_index=self._cursor, event="error", error_code=error_code),
        )
        self._apply(self._machine.send(event))

    def _accepts(self, command: str, event: PlaybackEvent) -> bool:
        if not self._open(command):
            return False
        if self._machine.can_accept(event):
            return True
        exc = StateError(self._machine.status, event)
        logger.warning(
            "%s ignored: %s", command, exc, extra=self._extra(event="command_ignored")
        )
        return False

    def _open(self, command: str) -> bool:
        if not self._closed:
            return True
        logger.warning(
            "%s ignored: controller is closed", command, extra=self._extra(event="command_ignored")
        )
        return False

    def _valid_index(self, command: str, index: int) -> bool:
        if 0 <= index < self.total_paragraphs:
            return True
        logger.warning(
            "%s ignored: paragraph index %d outside 0..%d",
            command,
            index,
            self.total_paragraphs - 1,
            extra=self._extra(paragraph_index=index, event="command_ignored"),
        )
        return False

    def _extra(self, **fields: object) -> dict[str, object]:
        return log_extra(
            session_id=self._session.session_id,
            status=self._machine.status.value,
            **fields,
        )
