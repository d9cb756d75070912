"""Tests for the buffer store and derived buffer status."""

from __future__ import annotations

import pytest

from readaloud.adapters.generation.base import AudioHandle
from readaloud.playback.buffer_store import BufferStore
from readaloud.playback.status import contiguous_ready, derive_buffer_status


@pytest.fixture
def store():
    return BufferStore(retain_behind=1)


def fill(store: BufferStore, indices) -> dict[int, AudioHandle]:
    handles = {i: AudioHandle(index=i, data=b"abc") for i in indices}
    for index, handle in handles.items():
        store.put(index, handle)
    return handles


class TestBufferStore:
    """Entries, eviction and handle release."""

    def test_put_and_get(self, store: BufferStore):
        handles = fill(store, [2])
        assert store.get(2) is handles[2]
        assert store.has(2)
        assert 2 in store
        assert store.get(3) is None

    def test_overwrite_releases_previous(self, store: BufferStore):
        first = fill(store, [0])[0]
        second = AudioHandle(index=0)
        store.put(0, second)
        assert first.released
        assert not second.released
        assert len(store) == 1

    def test_same_handle_not_released(self, store: BufferStore):
        handle = fill(store, [0])[0]
        store.put(0, handle)
        assert not handle.released

    def test_evict_before_keeps_retained(self, store: BufferStore):
        handles = fill(store, range(6))
        removed = store.evict_before(4)
        assert removed == [0, 1, 2]
        assert all(handles[i].released for i in removed)
        assert store.snapshot_generated_indices() == frozenset({3, 4, 5})

    def test_evict_outside(self, store: BufferStore):
        handles = fill(store, [0, 5, 9, 10, 15])
        assert store.evict_outside(9, 14) == [0, 5, 15]
        assert not handles[9].released
        assert [e.index for e in store.entries()] == [9, 10]

    def test_clear_releases_everything(self, store: BufferStore):
        handles = fill(store, range(3))
        store.clear()
        assert len(store) == 0
        assert all(h.released for h in handles.values())

    def test_version_bumps_on_mutation_only(self, store: BufferStore):
        version = store.version
        store.evict_before(10)
        assert store.version == version
        fill(store, [0])
        assert store.version == version + 1
        store.clear()
        assert store.version == version + 2

    def test_negative_retain_rejected(self):
        with pytest.raises(ValueError):
            BufferStore(retain_behind=-1)


class TestAudioHandle:
    def test_release_once(self):
        released: list[int] = []
        handle = AudioHandle(index=3, data=b"abc", on_release=lambda h: released.append(h.index))
        assert handle.release()
        assert not handle.release()
        assert released == [3]
        assert handle.data == b""


class TestBufferStatus:
    """Contiguous-ready counting."""

    def test_counts_from_cursor_inclusive(self):
        assert contiguous_ready(3, {3, 4, 5, 7}, total=10) == 3

    def test_gap_at_cursor(self):
        assert contiguous_ready(3, {4, 5}, total=10) == 0

    def test_stops_at_document_end(self):
        assert contiguous_ready(8, set(range(20)), total=10) == 2

    def test_derive(self):
        status = derive_buffer_status(
            cursor=3,
            generated=frozenset({2, 3, 4}),
            total=10,
            target_buffer=5,
            min_buffer=2,
            generating_index=5,
        )
        assert status.buffer_size == 2
        assert status.is_generating
        assert status.generating_index == 5
        assert status.generated == frozenset({2, 3, 4})

    def test_derive_idle(self):
        status = derive_buffer_status(
            cursor=0,
            generated=frozenset(),
            total=0,
            target_buffer=5,
            min_buffer=2,
            generating_index=None,
        )
        assert status.buffer_size == 0
        assert not status.is_generating
