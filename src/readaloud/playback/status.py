"""Observable buffer status and the snapshot handed to observers."""

from __future__ import annotations

from collections.abc import Container
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from readaloud.playback.state_machine import PlaybackStatus


@dataclass(frozen=True)
class BufferStatus:
    """Derived view of the lookahead buffer.

    ``buffer_size`` counts contiguous ready paragraphs starting at the
    cursor (inclusive).  Never mutated; recomputed after every change.
    """

    buffer_size: int = 0
    target_buffer: int = 0
    min_buffer: int = 0
    is_generating: bool = False
    generating_index: int | None = None
    generated: frozenset[int] = field(default_factory=frozenset)


def contiguous_ready(cursor: int, ready: Container[int], total: int) -> int:
    count = 0
    index = cursor
    while index < total and index in ready:
        count += 1
        index += 1
    return count


def derive_buffer_status(
    *,
    cursor: int,
    generated: frozenset[int],
    total: int,
    target_buffer: int,
    min_buffer: int,
    generating_index: int | None,
) -> BufferStatus:
    return BufferStatus(
        buffer_size=contiguous_ready(cursor, generated, total),
        target_buffer=target_buffer,
        min_buffer=min_buffer,
        is_generating=generating_index is not None,
        generating_index=generating_index,
        generated=generated,
    )


@dataclass(frozen=True)
class PlaybackSnapshot:
    """Everything the presentation layer may read, captured together."""

    status: PlaybackStatus
    buffer_status: BufferStatus
    current_index: int
    error: str | None = None
