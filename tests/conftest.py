"""Shared fakes for the playback tests: a scripted generation port and a manual renderer."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from readaloud.adapters.generation.base import AudioHandle
from readaloud.config import GenerationSettings
from readaloud.errors import GenerationError, GenerationErrorKind, RenderError


class ScriptedPort:
    """GenerationPort double.

    In ``manual`` mode every call blocks until the test resolves it with
    ``complete`` or ``fail``; otherwise calls succeed after ``delay`` unless
    ``failures`` still holds a count for the index.
    With ``cancellable=False`` it behaves like a backend that cannot be
    interrupted: cancelling a call does not stop it.
    """

    def __init__(
        self,
        *,
        manual: bool = False,
        delay: float = 0.0,
        failures: dict[int, int] | None = None,
        duration_s: float = 0.01,
        cancellable: bool = True,
    ) -> None:
        self.supports_cancellation = cancellable
        self.manual = manual
        self.delay = delay
        self.failures = dict(failures or {})
        self.duration_s = duration_s
        self.calls: list[int] = []
        self.settings_seen: list[GenerationSettings] = []
        self.cancelled: list[int] = []
        self.handles: list[AudioHandle] = []
        self.pending: dict[int, asyncio.Future[AudioHandle]] = {}
        self.outstanding = 0
        self.max_outstanding = 0
        self.closed = False

    async def generate(
        self, index: int, text: str, settings: GenerationSettings
    ) -> AudioHandle:
        self.calls.append(index)
        self.settings_seen.append(settings)
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        try:
            if self.manual:
                future = asyncio.get_running_loop().create_future()
                self.pending[index] = future
                try:
                    if not self.supports_cancellation:
                        return await _uninterruptible(future)
                    return await future
                finally:
                    self.pending.pop(index, None)
            await asyncio.sleep(self.delay)
            if self.failures.get(index, 0) > 0:
                self.failures[index] -= 1
                raise GenerationError("server", "scripted failure", index)
            return self._handle(index)
        except asyncio.CancelledError:
            self.cancelled.append(index)
            raise
        finally:
            self.outstanding -= 1

    def complete(self, index: int) -> AudioHandle:
        handle = self._handle(index)
        self.pending[index].set_result(handle)
        return handle

    def fail(self, index: int, kind: GenerationErrorKind = "server") -> None:
        self.pending[index].set_exception(GenerationError(kind, "scripted failure", index))

    async def close(self) -> None:
        self.closed = True

    def _handle(self, index: int) -> AudioHandle:
        handle = AudioHandle(index=index, data=b"\x00" * 16, duration_s=self.duration_s)
        self.handles.append(handle)
        return handle


async def _uninterruptible(future: asyncio.Future[AudioHandle]) -> AudioHandle:
    """Await ``future`` to completion, ignoring cancellation like a worker thread would."""
    cancelled = False
    while not future.done():
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            if future.done():
                break
            cancelled = True
    if cancelled:
        asyncio.current_task().uncancel()
    return future.result()


class FakeRenderer:
    """AudioRenderer double; the test decides when a clip ends or fails."""

    def __init__(self) -> None:
        self.rendered: list[int] = []
        self.calls: list[str] = []
        self.stopped: list[tuple[int, bool]] = []
        self.current: AudioHandle | None = None
        self._on_ended: Callable[[], None] | None = None
        self._on_error: Callable[[Exception], None] | None = None

    def render(self, handle, on_ended, on_error) -> None:
        self.calls.append("render")
        self.rendered.append(handle.index)
        self.current = handle
        self._on_ended = on_ended
        self._on_error = on_error

    def pause(self) -> None:
        self.calls.append("pause")

    def resume(self) -> None:
        self.calls.append("resume")

    def stop(self) -> None:
        self.calls.append("stop")
        if self.current is not None:
            self.stopped.append((self.current.index, self.current.released))
        self.current = None
        self._on_ended = None
        self._on_error = None

    def finish(self) -> None:
        on_ended = self._on_ended
        assert on_ended is not None, "nothing is rendering"
        self.current = None
        self._on_ended = None
        self._on_error = None
        on_ended()

    def fail(self, exc: Exception | None = None) -> None:
        on_error = self._on_error
        assert on_error is not None, "nothing is rendering"
        self.current = None
        self._on_ended = None
        self._on_error = None
        on_error(exc or RenderError("output device lost"))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


@pytest.fixture
def until():
    """Poll ``predicate`` on the event loop until it holds."""
    return wait_until


@pytest.fixture
def port():
    return ScriptedPort(manual=True)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def scripted_port():
    """Factory for non-manual ports."""
    return ScriptedPort


@pytest.fixture
def make_handle():
    def factory(index: int, duration_s: float = 0.01) -> AudioHandle:
        return AudioHandle(index=index, data=b"\x00" * 16, duration_s=duration_s)

    return factory
