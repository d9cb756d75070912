"""Playback state machine — status enum, typed events and the transition table.

Each ``(status, event)`` key maps to an ordered list of rows.  The first row
whose guard holds decides the target status and the renderer effects the
controller must carry out.  A key missing from the table means the event is
not accepted in that status and ``send`` raises ``StateError``.

    status              event             target
    ──────────────────  ────────────────  ─────────────────────────────────
    idle/completed/err  START             initial-buffering
    initial-buffering   BUFFER_READY      playing              (render)
    buffering           BUFFER_READY      playing              (render)
    playing             AUDIO_ENDED       completed | playing | buffering
    playing/buffering   PAUSE             paused               (pause render)
    paused              RESUME            playing | buffering
    non-idle            STOP              idle                 (stop render)
    any but error       SEEK              buffering | initial-buffering
    active              GENERATION_FAILED error                (stop render)
    active              RENDER_FAILED     error                (stop render)
    error               CLEAR_ERROR       idle
    active              INVALIDATE        initial-buffering | paused
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

from readaloud.errors import StateError
from readaloud.logging import get_logger, log_extra

logger = get_logger("playback.state_machine")


class PlaybackStatus(str, Enum):
    IDLE = "idle"
    INITIAL_BUFFERING = "initial-buffering"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class PlaybackEvent(Enum):
    START = auto()
    BUFFER_READY = auto()
    AUDIO_ENDED = auto()
    PAUSE = auto()
    RESUME = auto()
    STOP = auto()
    SEEK = auto()
    GENERATION_FAILED = auto()
    RENDER_FAILED = auto()
    CLEAR_ERROR = auto()
    INVALIDATE = auto()  # buffered audio no longer matches the voice settings

    def __str__(self) -> str:
        return self.name


class Effect(Enum):
    RENDER = auto()         # start rendering the cursor's clip
    PAUSE_RENDER = auto()
    RESUME_RENDER = auto()  # continue the clip paused mid-way
    STOP_RENDER = auto()


@dataclass(frozen=True)
class Guards:
    """Facts about the cursor the controller hands in with every event."""

    cursor_ready: bool = False
    buffer_sufficient: bool = False
    at_end: bool = False
    render_in_progress: bool = False

    @property
    def can_play(self) -> bool:
        return self.cursor_ready and self.buffer_sufficient


@dataclass(frozen=True)
class Transition:
    source: PlaybackStatus
    event: PlaybackEvent
    target: PlaybackStatus
    effects: tuple[Effect, ...] = ()

    @property
    def changed(self) -> bool:
        return self.source is not self.target


Guard = Callable[[Guards], bool]
Row = tuple[Guard, PlaybackStatus, tuple[Effect, ...]]


def _always(g: Guards) -> bool:
    return True


def _can_play(g: Guards) -> bool:
    return g.can_play


def _at_end(g: Guards) -> bool:
    return g.at_end


def _mid_clip(g: Guards) -> bool:
    return g.render_in_progress


def _cursor_ready(g: Guards) -> bool:
    return g.cursor_ready


S = PlaybackStatus
E = PlaybackEvent

ACTIVE = frozenset({S.INITIAL_BUFFERING, S.BUFFERING, S.PLAYING, S.PAUSED})
TERMINAL = frozenset({S.IDLE, S.COMPLETED, S.ERROR})


def _build_table() -> dict[tuple[PlaybackStatus, PlaybackEvent], list[Row]]:
    table: dict[tuple[PlaybackStatus, PlaybackEvent], list[Row]] = {}

    for status in TERMINAL:
        table[(status, E.START)] = [(_always, S.INITIAL_BUFFERING, ())]

    table[(S.INITIAL_BUFFERING, E.BUFFER_READY)] = [(_can_play, S.PLAYING, (Effect.RENDER,))]
    table[(S.BUFFERING, E.BUFFER_READY)] = [(_can_play, S.PLAYING, (Effect.RENDER,))]

    table[(S.PLAYING, E.AUDIO_ENDED)] = [
        (_at_end, S.COMPLETED, ()),
        (_can_play, S.PLAYING, (Effect.RENDER,)),
        (_always, S.BUFFERING, ()),
    ]
    # an ended event racing a pause still advances the cursor
    table[(S.PAUSED, E.AUDIO_ENDED)] = [
        (_at_end, S.COMPLETED, ()),
        (_always, S.PAUSED, ()),
    ]

    table[(S.PLAYING, E.PAUSE)] = [(_always, S.PAUSED, (Effect.PAUSE_RENDER,))]
    table[(S.BUFFERING, E.PAUSE)] = [(_always, S.PAUSED, ())]

    table[(S.PAUSED, E.RESUME)] = [
        (_mid_clip, S.PLAYING, (Effect.RESUME_RENDER,)),
        (_can_play, S.PLAYING, (Effect.RENDER,)),
        (_always, S.BUFFERING, ()),
    ]

    for status in (*ACTIVE, S.COMPLETED, S.ERROR):
        table[(status, E.STOP)] = [(_always, S.IDLE, (Effect.STOP_RENDER,))]

    for status in ACTIVE:
        table[(status, E.SEEK)] = [
            (_cursor_ready, S.BUFFERING, (Effect.STOP_RENDER,)),
            (_always, S.INITIAL_BUFFERING, (Effect.STOP_RENDER,)),
        ]
        table[(status, E.GENERATION_FAILED)] = [(_always, S.ERROR, (Effect.STOP_RENDER,))]
        table[(status, E.RENDER_FAILED)] = [(_always, S.ERROR, (Effect.STOP_RENDER,))]
    for status in (S.IDLE, S.COMPLETED):
        table[(status, E.SEEK)] = [(_always, S.INITIAL_BUFFERING, ())]

    for status in (S.INITIAL_BUFFERING, S.BUFFERING, S.PLAYING):
        table[(status, E.INVALIDATE)] = [(_always, S.INITIAL_BUFFERING, (Effect.STOP_RENDER,))]
    table[(S.PAUSED, E.INVALIDATE)] = [(_always, S.PAUSED, (Effect.STOP_RENDER,))]

    table[(S.ERROR, E.CLEAR_ERROR)] = [(_always, S.IDLE, ())]
    return table


TRANSITIONS = _build_table()


class PlaybackStateMachine:
    """Authoritative playback status.

    The machine only decides; the controller performs the returned effects.
    """

    def __init__(self, status: PlaybackStatus = PlaybackStatus.IDLE) -> None:
        self._status = status
        self.session_id: str | None = None

    @property
    def status(self) -> PlaybackStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status in ACTIVE

    def can_accept(self, event: PlaybackEvent) -> bool:
        return (self._status, event) in TRANSITIONS

    def send(self, event: PlaybackEvent, guards: Guards | None = None) -> Transition:
        """Apply ``event``; return the transition taken.

        Raises:
            StateError: if the current status does not accept ``event``.
        """
        rows = TRANSITIONS.get((self._status, event))
        if rows is None:
            raise StateError(self._status, event)
        guards = guards or Guards()
        for guard, target, effects in rows:
            if guard(guards):
                break
        else:
            # guarded event whose guard failed: stay put
            return Transition(self._status, event, self._status)

        transition = Transition(self._status, event, target, effects)
        self._status = target
        if transition.changed:
            logger.info(
                "%s -> %s on %s",
                transition.source,
                transition.target,
                event,
                extra=log_extra(
                    session_id=self.session_id,
                    status=target.value,
                    event=event.name.lower(),
                ),
            )
        return transition
