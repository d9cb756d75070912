"""Generation port protocol — the interface every TTS backend client implements."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from readaloud.config import GenerationSettings


@dataclass(eq=False)
class AudioHandle:
    """An opaque, revocable reference to one generated paragraph clip.

    ``release()`` revokes the handle exactly once; the underlying bytes are
    dropped and the optional ``on_release`` hook runs (e.g. to delete a
    temporary file or revoke a URL).
    """

    index: int
    data: bytes = b""
    content_type: str = "audio/wav"
    source_url: str = ""
    duration_s: float | None = None
    on_release: Callable[[AudioHandle], None] | None = field(default=None, repr=False)
    released: bool = False

    def release(self) -> bool:
        """Revoke the handle.  Returns False if it was already released."""
        if self.released:
            return False
        self.released = True
        self.data = b""
        if self.on_release is not None:
            self.on_release(self)
        return True


@runtime_checkable
class GenerationPort(Protocol):
    """Protocol for paragraph-at-a-time TTS backends.

    The backend serialises requests, so callers keep at most one
    ``generate`` call outstanding.  ``supports_cancellation`` tells callers
    whether cancelling a ``generate`` call really stops the backend; when
    False the call is left to finish and its result discarded.
    """

    supports_cancellation: bool

    async def generate(
        self,
        index: int,
        text: str,
        settings: GenerationSettings,
    ) -> AudioHandle:
        """Render one paragraph to a playable audio handle.

        Raises:
            GenerationError: with kind ``network``, ``server`` or ``timeout``.
        """
        ...

    async def close(self) -> None:
        """Close the connection and release resources."""
        ...
