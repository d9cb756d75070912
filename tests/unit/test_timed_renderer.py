"""Tests for the timed (headless) renderer."""

from __future__ import annotations

import asyncio
import io
import wave

import pytest

from readaloud.adapters.generation.base import AudioHandle
from readaloud.adapters.render.timed import TimedRenderer, wav_duration
from readaloud.errors import RenderError


def make_wav(seconds: float, rate: int = 8000) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(rate)
        wf.writeframes(b"\x00\x00" * int(seconds * rate))
    return buf.getvalue()


class Events:
    def __init__(self) -> None:
        self.ended = 0
        self.errors: list[Exception] = []

    def on_ended(self) -> None:
        self.ended += 1

    def on_error(self, exc: Exception) -> None:
        self.errors.append(exc)


@pytest.fixture
def events():
    return Events()


class TestWavDuration:
    def test_duration(self):
        assert wav_duration(make_wav(0.5)) == pytest.approx(0.5)

    def test_garbage(self):
        with pytest.raises(RenderError):
            wav_duration(b"not a wav file")


class TestTimedRenderer:
    async def test_ends_after_duration(self, events: Events, until):
        renderer = TimedRenderer()
        renderer.render(AudioHandle(index=0, data=make_wav(0.02)), events.on_ended, events.on_error)
        assert renderer.is_playing
        assert renderer.current_index == 0

        await until(lambda: events.ended == 1)
        assert not renderer.is_playing

    async def test_playback_rate_shortens_clip(self, events: Events):
        renderer = TimedRenderer(playback_rate=4.0)
        handle = AudioHandle(index=0, duration_s=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()
        renderer.render(handle, events.on_ended, events.on_error)
        await asyncio.sleep(0.1)
        assert events.ended == 1
        assert loop.time() - started < 0.2

    async def test_pause_holds_and_resume_finishes(self, events: Events, until):
        renderer = TimedRenderer()
        renderer.render(AudioHandle(index=0, duration_s=0.05), events.on_ended, events.on_error)
        renderer.pause()
        await asyncio.sleep(0.08)
        assert events.ended == 0

        renderer.resume()
        await until(lambda: events.ended == 1)

    async def test_stop_suppresses_ended(self, events: Events):
        renderer = TimedRenderer()
        renderer.render(AudioHandle(index=0, duration_s=0.02), events.on_ended, events.on_error)
        renderer.stop()
        await asyncio.sleep(0.05)
        assert events.ended == 0
        assert renderer.current_index is None

    async def test_undecodable_clip_reports_error(self, events: Events, until):
        renderer = TimedRenderer()
        renderer.render(AudioHandle(index=0, data=b"junk"), events.on_ended, events.on_error)
        await until(lambda: events.errors)
        assert isinstance(events.errors[0], RenderError)
        assert events.ended == 0

    async def test_writes_clips_to_output_dir(self, events: Events, tmp_path, until):
        renderer = TimedRenderer(output_dir=tmp_path)
        data = make_wav(0.01)
        renderer.render(AudioHandle(index=4, data=data), events.on_ended, events.on_error)
        await until(lambda: events.ended == 1)
        assert (tmp_path / "paragraph_0005.wav").read_bytes() == data
