"""Error taxonomy for the playback engine."""

from __future__ import annotations

from typing import Literal

GenerationErrorKind = Literal["network", "server", "timeout"]


class ReadaloudError(Exception):
    """Base class for all engine errors."""


class ConfigError(ReadaloudError):
    """Invalid buffer configuration, rejected at configuration time."""


class GenerationError(ReadaloudError):
    """A Generation Port call failed for one paragraph."""

    def __init__(
        self,
        kind: GenerationErrorKind,
        message: str,
        index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.index = index

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class RenderError(ReadaloudError):
    """The audio renderer could not play a ready handle."""


class StateError(ReadaloudError):
    """A command or event arrived in a status that does not accept it."""

    def __init__(self, status: object, event: object) -> None:
        super().__init__(f"{event} not accepted while {status}")
        self.status = status
        self.event = event
