"""Audio renderer protocol — the boundary to whatever actually plays audio."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from readaloud.adapters.generation.base import AudioHandle

EndedCallback = Callable[[], None]
ErrorCallback = Callable[[Exception], None]


@runtime_checkable
class AudioRenderer(Protocol):
    """Protocol for audio output.

    ``render`` starts playback and returns immediately.  The renderer later
    reports the clip's ``ended`` or ``error`` event through the callbacks
    supplied with that render call.  Platform quirks (autoplay priming,
    pitch preservation) belong behind this interface.
    """

    def render(
        self,
        handle: AudioHandle,
        on_ended: EndedCallback,
        on_error: ErrorCallback,
    ) -> None:
        """Start playing ``handle``.

        Raises:
            RenderError: if playback cannot be started at all.
        """
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        """Stop the current clip; its callbacks must not fire afterwards."""
        ...
