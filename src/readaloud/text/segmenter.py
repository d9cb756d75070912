"""Paragraph segmentation — splits a document into speakable paragraphs.

Rules, applied in order:
1. Scene breaks (``---``, ``***``, ``* * *``, ``# # #``, ``~ ~ ~``) always split
2. Blank lines separate paragraphs; text with no blank lines splits per line
3. Paragraphs longer than ``max_chars`` are broken at the last sentence end,
   then ``;``, then ``,``, then whitespace before the limit
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from readaloud.config import Settings
from readaloud.logging import get_logger

logger = get_logger("segmenter")

SCENE_BREAK = re.compile(
    r"^[ \t]*(?:-{3,}|\*{3,}|\*(?:[ \t]+\*){2,}|#(?:[ \t]+#){2,}|~(?:[ \t]+~){2,})[ \t]*$",
    re.MULTILINE,
)
BLANK_LINE = re.compile(r"\n[ \t]*\n")
WHITESPACE = re.compile(r"\s+")

# Tried in order; a break earlier than half the limit is not worth taking
BREAK_CHARS = (".!?", ";", ",")


@dataclass
class SegmenterConfig:
    """Configuration for paragraph segmentation."""

    max_chars: int = 4096

    @classmethod
    def from_settings(cls, settings: Settings) -> SegmenterConfig:
        return cls(max_chars=min(settings.paragraph_max_chars, settings.tts_max_characters))


def split_paragraphs(text: str, config: SegmenterConfig | None = None) -> list[str]:
    """Split ``text`` into paragraphs no longer than ``config.max_chars``."""
    config = config or SegmenterConfig()
    if config.max_chars < 1:
        raise ValueError("max_chars must be positive")
    if not text or not text.strip():
        return []

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    paragraphs: list[str] = []
    for section in SCENE_BREAK.split(text):
        if not section.strip():
            continue
        if BLANK_LINE.search(section.strip()):
            blocks = BLANK_LINE.split(section)
        else:
            blocks = section.split("\n")
        for block in blocks:
            paragraph = WHITESPACE.sub(" ", block).strip()
            if paragraph:
                paragraphs.extend(_split_long(paragraph, config.max_chars))

    logger.debug("Split document into %d paragraphs", len(paragraphs))
    return paragraphs


def _split_long(paragraph: str, max_chars: int) -> list[str]:
    pieces: list[str] = []
    rest = paragraph
    while len(rest) > max_chars:
        split_at = _find_break_index(rest, max_chars)
        piece = rest[:split_at].strip()
        if piece:
            pieces.append(piece)
        rest = rest[split_at:].lstrip()
    if rest:
        pieces.append(rest)
    return pieces


def _find_break_index(text: str, max_len: int) -> int:
    limit = min(max_len, len(text))
    floor = limit // 2
    for chars in BREAK_CHARS:
        for i in range(limit - 1, floor - 1, -1):
            if text[i] in chars:
                return i + 1
    for i in range(limit, floor - 1, -1):
        if i < len(text) and text[i].isspace():
            return i
    return limit
