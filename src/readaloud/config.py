"""Centralised configuration via pydantic-settings + .env."""

from __future__ import annotations

from dataclasses import dataclass, replace

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from readaloud.errors import ConfigError


class Settings(BaseSettings):
    """All knobs live here.  Loaded from environment / .env in project root."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── TTS backend (AllTalk-compatible) ─────────────────
    tts_host: str = "localhost"
    tts_port: int = 7851
    tts_generate_path: str = "/api/tts-generate"
    tts_request_timeout_s: float = 60.0
    tts_max_characters: int = 4096

    # ── Generation settings ─────────────────────────────
    tts_voice: str = "female_01.wav"
    tts_language: str = "en"
    tts_speed: float = 1.0
    tts_pitch: int = 0
    tts_temperature: float = 0.75
    tts_repetition_penalty: float = 10.0

    # ── Lookahead buffer ────────────────────────────────
    buffer_target_size: int = 5
    buffer_min_size: int = 2
    buffer_retain_behind: int = 1

    # ── Generation policy ───────────────────────────────
    generation_max_retries: int = 2
    generation_timeout_s: float = 30.0
    generation_retry_backoff_s: float = 1.0

    # ── Reader ───────────────────────────────────────────
    document_path: str = ""
    start_index: int = 0
    paragraph_max_chars: int = 4096
    render_output_dir: str = ""
    playback_rate: float = 1.0

    # ── Logging / Metrics ───────────────────────────────
    log_level: str = "INFO"
    metrics_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────
    @property
    def tts_base_url(self) -> str:
        return f"http://{self.tts_host}:{self.tts_port}"

    @field_validator(
        "tts_request_timeout_s", "generation_timeout_s", "playback_rate"
    )
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator(
        "generation_max_retries", "generation_retry_backoff_s", "buffer_retain_behind"
    )
    @classmethod
    def _not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v


def get_settings() -> Settings:
    """Singleton-ish factory; import and call where needed."""
    return Settings()


@dataclass(frozen=True)
class BufferedPlaybackConfig:
    """Lookahead bounds for buffered playback.

    ``target_buffer_size`` is how far ahead of the cursor generation may run;
    playback pauses in ``buffering`` once fewer than ``min_buffer_size``
    ready paragraphs remain from the cursor onwards.
    """

    target_buffer_size: int = 5
    min_buffer_size: int = 2

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.target_buffer_size < 2:
            raise ConfigError(
                f"target_buffer_size must be at least 2, got {self.target_buffer_size}"
            )
        if not 1 <= self.min_buffer_size < self.target_buffer_size:
            raise ConfigError(
                "min_buffer_size must satisfy 1 <= min_buffer_size < target_buffer_size, "
                f"got min={self.min_buffer_size} target={self.target_buffer_size}"
            )

    def merged(self, **partial: int) -> BufferedPlaybackConfig:
        """Return a validated copy with ``partial`` applied."""
        unknown = set(partial) - {"target_buffer_size", "min_buffer_size"}
        if unknown:
            raise ConfigError(f"Unknown buffer config fields: {sorted(unknown)}")
        return replace(self, **partial)

    @classmethod
    def from_settings(cls, settings: Settings) -> BufferedPlaybackConfig:
        return cls(
            target_buffer_size=settings.buffer_target_size,
            min_buffer_size=settings.buffer_min_size,
        )


@dataclass(frozen=True)
class GenerationSettings:
    """Voice parameters sent with every generation request."""

    voice: str = "female_01.wav"
    language: str = "en"
    speed: float = 1.0
    pitch: int = 0
    temperature: float = 0.75
    repetition_penalty: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> GenerationSettings:
        return cls(
            voice=settings.tts_voice,
            language=settings.tts_language,
            speed=settings.tts_speed,
            pitch=settings.tts_pitch,
            temperature=settings.tts_temperature,
            repetition_penalty=settings.tts_repetition_penalty,
        )
