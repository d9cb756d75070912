"""Buffer store — generated audio keyed by paragraph index."""

from __future__ import annotations

import time
from collections.abc import Iterator
from dataclasses import dataclass, field

from readaloud.adapters.generation.base import AudioHandle
from readaloud.logging import get_logger, log_extra

logger = get_logger("playback.buffer_store")


@dataclass
class BufferEntry:
    index: int
    audio: AudioHandle
    generated_at: float = field(default_factory=time.time)


class BufferStore:
    """At most one entry per paragraph index.

    Every entry removed or overwritten has its audio handle released, so
    handles never leak.  ``version`` increases on every mutation; derived
    views cached against an older version are stale.
    """

    def __init__(self, retain_behind: int = 1) -> None:
        if retain_behind < 0:
            raise ValueError("retain_behind must not be negative")
        self.retain_behind = retain_behind
        self._entries: dict[int, BufferEntry] = {}
        self.version = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, index: object) -> bool:
        return index in self._entries

    def put(self, index: int, audio: AudioHandle) -> BufferEntry:
        old = self._entries.get(index)
        if old is not None and old.audio is not audio:
            old.audio.release()
        entry = BufferEntry(index=index, audio=audio)
        self._entries[index] = entry
        self.version += 1
        return entry

    def get(self, index: int) -> AudioHandle | None:
        entry = self._entries.get(index)
        return entry.audio if entry else None

    def has(self, index: int) -> bool:
        return index in self._entries

    def entries(self) -> Iterator[BufferEntry]:
        for index in sorted(self._entries):
            yield self._entries[index]

    def evict_before(self, index: int) -> list[int]:
        """Drop entries more than ``retain_behind`` paragraphs behind ``index``."""
        cutoff = index - self.retain_behind
        return self._remove([i for i in self._entries if i < cutoff], reason="behind")

    def evict_outside(self, low: int, high: int) -> list[int]:
        """Drop entries outside the inclusive window ``[low, high]``."""
        return self._remove(
            [i for i in self._entries if i < low or i > high], reason="outside"
        )

    def clear(self) -> list[int]:
        return self._remove(list(self._entries), reason="clear")

    def snapshot_generated_indices(self) -> frozenset[int]:
        return frozenset(self._entries)

    def _remove(self, indices: list[int], *, reason: str) -> list[int]:
        for index in sorted(indices):
            entry = self._entries.pop(index)
            entry.audio.release()
            logger.debug(
                "Evicted (%s)",
                reason,
                extra=log_extra(paragraph_index=index, event="evict"),
            )
        if indices:
            self.version += 1
        return sorted(indices)
