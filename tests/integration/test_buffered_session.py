"""End-to-end buffered playback: scripted TTS latency against a timed renderer.

Runs fully in-process; no TTS server needed.
"""

from __future__ import annotations

import asyncio

import pytest

from readaloud.adapters.render.timed import TimedRenderer
from readaloud.config import BufferedPlaybackConfig
from readaloud.playback.controller import BufferedPlaybackController
from readaloud.playback.state_machine import PlaybackStatus as S
from readaloud.playback.status import PlaybackSnapshot
from readaloud.text.segmenter import split_paragraphs

DOCUMENT = "\n\n".join(f"This is paragraph {i} of the story." for i in range(8))


class TestBufferedSession:
    """Whole-document runs."""

    @pytest.fixture
    def snapshots(self) -> list[PlaybackSnapshot]:
        return []

    async def _run(self, port, snapshots, *, paragraphs, timeout=5.0, **kwargs):
        controller = BufferedPlaybackController(
            port,
            TimedRenderer(),
            paragraphs,
            config=BufferedPlaybackConfig(target_buffer_size=3, min_buffer_size=2),
            **kwargs,
        )
        done = asyncio.Event()

        def observe(snapshot: PlaybackSnapshot) -> None:
            snapshots.append(snapshot)
            if snapshot.status in (S.COMPLETED, S.ERROR):
                done.set()

        controller.subscribe(observe)
        controller.start()
        try:
            await asyncio.wait_for(done.wait(), timeout)
        finally:
            await controller.close()
        return controller

    async def test_reads_whole_document(self, scripted_port, snapshots):
        paragraphs = split_paragraphs(DOCUMENT)
        port = scripted_port(delay=0.005, duration_s=0.01)
        controller = await self._run(port, snapshots, paragraphs=paragraphs)

        assert len(paragraphs) == 8
        assert snapshots[-1].status is S.IDLE
        assert any(s.status is S.COMPLETED for s in snapshots)
        assert port.max_outstanding == 1
        assert sorted(set(port.calls)) == list(range(8))
        assert all(h.released for h in port.handles)
        assert controller.session.metrics.playback.paragraphs_played == 8

    async def test_slow_backend_stalls_but_finishes(self, scripted_port, snapshots):
        port = scripted_port(delay=0.03, duration_s=0.005)
        await self._run(port, snapshots, paragraphs=[f"p{i}" for i in range(5)])

        statuses = [s.status for s in snapshots]
        assert S.BUFFERING in statuses
        assert S.COMPLETED in statuses
        for snap in snapshots:
            assert all(i >= snap.current_index - 1 for i in snap.buffer_status.generated)

    async def test_retries_recover_transient_failure(self, scripted_port, snapshots):
        port = scripted_port(delay=0.002, failures={2: 2})
        await self._run(port, snapshots, paragraphs=[f"p{i}" for i in range(5)], max_retries=2)

        assert port.calls.count(2) == 3
        assert any(s.status is S.COMPLETED for s in snapshots)

    async def test_persistent_failure_surfaces_error(self, scripted_port, snapshots):
        port = scripted_port(delay=0.002, failures={3: 100})
        await self._run(port, snapshots, paragraphs=[f"p{i}" for i in range(6)], max_retries=1)

        errors = [s for s in snapshots if s.status is S.ERROR]
        assert errors
        assert errors[0].current_index == 3
        assert "paragraph 4" in errors[0].error
        assert port.calls.count(3) == 2
        assert not any(i > 3 for i in port.calls)
