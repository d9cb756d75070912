"""Headless renderer that plays clips in wall-clock time without a sound device.

Useful for dry runs and for exporting what would have been heard: each
clip "plays" for its decoded duration (scaled by the playback rate) and can
optionally be written to a directory as it starts.
"""

from __future__ import annotations

import asyncio
import io
import mimetypes
import wave
from pathlib import Path

from readaloud.adapters.generation.base import AudioHandle
from readaloud.adapters.render.base import EndedCallback, ErrorCallback
from readaloud.errors import RenderError
from readaloud.logging import get_logger, log_extra

logger = get_logger("render.timed")

AUDIO_EXTENSIONS = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
}


def wav_duration(data: bytes) -> float:
    """Return the duration in seconds of a WAV payload."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wav:
            frames = wav.getnframes()
            rate = wav.getframerate()
    except (wave.Error, EOFError) as exc:
        raise RenderError(f"Cannot decode audio: {exc}") from exc
    if rate <= 0:
        raise RenderError("Cannot decode audio: zero sample rate")
    return frames / rate


class TimedRenderer:
    """AudioRenderer that waits out each clip's duration on the event loop."""

    def __init__(
        self,
        *,
        playback_rate: float = 1.0,
        output_dir: str | Path | None = None,
    ) -> None:
        self._rate = playback_rate
        self._output_dir = Path(output_dir) if output_dir else None
        self._task: asyncio.Task[None] | None = None
        self._handle: AudioHandle | None = None
        self._on_ended: EndedCallback | None = None
        self._remaining_s = 0.0
        self._segment_started_at = 0.0

    @property
    def current_index(self) -> int | None:
        return self._handle.index if self._handle else None

    @property
    def is_playing(self) -> bool:
        return self._task is not None and not self._task.done()

    def render(
        self,
        handle: AudioHandle,
        on_ended: EndedCallback,
        on_error: ErrorCallback,
    ) -> None:
        self.stop()
        loop = asyncio.get_running_loop()
        try:
            duration = handle.duration_s
            if duration is None:
                duration = wav_duration(handle.data)
            if self._output_dir is not None:
                self._write_clip(handle)
        except (RenderError, OSError) as exc:
            error = exc if isinstance(exc, RenderError) else RenderError(str(exc))
            loop.call_soon(on_error, error)
            return

        self._handle = handle
        self._on_ended = on_ended
        self._remaining_s = duration / self._rate
        self._start_segment()
        logger.debug(
            "Rendering %.2fs clip",
            self._remaining_s,
            extra=log_extra(paragraph_index=handle.index, event="render"),
        )

    def pause(self) -> None:
        if not self.is_playing:
            return
        loop = asyncio.get_running_loop()
        self._remaining_s = max(
            self._remaining_s - (loop.time() - self._segment_started_at), 0.0
        )
        self._cancel_task()

    def resume(self) -> None:
        if self._handle is None or self.is_playing:
            return
        self._start_segment()

    def stop(self) -> None:
        self._cancel_task()
        self._handle = None
        self._on_ended = None
        self._remaining_s = 0.0

    def _start_segment(self) -> None:
        loop = asyncio.get_running_loop()
        self._segment_started_at = loop.time()
        self._task = asyncio.create_task(self._play(self._remaining_s))

    async def _play(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        on_ended = self._on_ended
        self._handle = None
        self._on_ended = None
        self._task = None
        if on_ended is not None:
            on_ended()

    def _cancel_task(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    def _write_clip(self, handle: AudioHandle) -> None:
        assert self._output_dir is not None
        self._output_dir.mkdir(parents=True, exist_ok=True)
        content_type = handle.content_type.split(";")[0].strip().lower()
        ext = (
            AUDIO_EXTENSIONS.get(content_type)
            or mimetypes.guess_extension(content_type)
            or ".wav"
        )
        path = self._output_dir / f"paragraph_{handle.index + 1:04d}{ext}"
        path.write_bytes(handle.data)
