"""AllTalk TTS adapter — HTTP transport.

Posts one paragraph per request to the AllTalk ``/api/tts-generate``
endpoint (form-encoded), then downloads the rendered file the server
points at and wraps it in an ``AudioHandle``.
"""

from __future__ import annotations

import time

import aiohttp

from readaloud.adapters.generation.base import AudioHandle
from readaloud.config import GenerationSettings, Settings
from readaloud.errors import GenerationError
from readaloud.logging import get_logger, log_extra

logger = get_logger("tts.alltalk_http")


class AllTalkHTTPAdapter:
    """HTTP-based generation port for an AllTalk server.

    Implements the GenerationPort protocol.  Errors are mapped onto
    ``GenerationError`` kinds: connection problems are ``network``,
    HTTP or generation failures are ``server``, client timeouts are
    ``timeout``.

    AllTalk keeps generating after the client disconnects, so an abandoned
    request is left to finish rather than cancelled.
    """

    supports_cancellation = False

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._base_url = settings.tts_base_url
        self._path = settings.tts_generate_path
        self._timeout_s = settings.tts_request_timeout_s
        self._max_chars = settings.tts_max_characters
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s)
            )
        return self._session

    def _form(self, index: int, text: str, settings: GenerationSettings) -> dict[str, str]:
        return {
            "text_input": text,
            "text_filtering": "standard",
            "character_voice_gen": settings.voice,
            "narrator_enabled": "false",
            "narrator_voice_gen": "",
            "text_not_inside": "character",
            "language": settings.language,
            "output_file_name": f"readaloud_{index}_{int(time.time() * 1000)}",
            "output_file_timestamp": "false",
            "autoplay": "false",
            "speed": str(settings.speed),
            "pitch": str(settings.pitch),
            "temperature": str(settings.temperature),
            "repetition_penalty": str(settings.repetition_penalty),
        }

    def _resolve_url(self, output_file_url: str) -> str:
        if output_file_url.startswith(("http://", "https://")):
            return output_file_url
        return f"{self._base_url}{output_file_url}"

    async def generate(
        self,
        index: int,
        text: str,
        settings: GenerationSettings,
    ) -> AudioHandle:
        """Generate audio for one paragraph and download it."""
        if len(text) > self._max_chars:
            logger.warning(
                "Paragraph has %d characters, truncating to %d",
                len(text),
                self._max_chars,
                extra=log_extra(paragraph_index=index),
            )
            text = text[: self._max_chars]

        session = await self._ensure_session()
        url = f"{self._base_url}{self._path}"

        try:
            async with session.post(url, data=self._form(index, text, settings)) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise GenerationError(
                        "server", f"HTTP {resp.status}: {body[:200]}", index
                    )
                result = await resp.json(content_type=None)

            status = result.get("status") if isinstance(result, dict) else None
            if status != "generate-success" or not result.get("output_file_url"):
                detail = result.get("error") if isinstance(result, dict) else None
                raise GenerationError(
                    "server", f"TTS generation failed: {detail or status}", index
                )

            audio_url = self._resolve_url(result["output_file_url"])
            async with session.get(audio_url) as resp:
                if resp.status != 200:
                    raise GenerationError(
                        "server", f"Audio download failed with HTTP {resp.status}", index
                    )
                data = await resp.read()
                content_type = resp.headers.get("Content-Type", "audio/wav")

        except GenerationError:
            raise
        except TimeoutError as exc:
            raise GenerationError(
                "timeout", f"No response within {self._timeout_s}s", index
            ) from exc
        except aiohttp.ClientResponseError as exc:
            raise GenerationError("server", str(exc), index) from exc
        except aiohttp.ClientError as exc:
            raise GenerationError("network", str(exc), index) from exc
        except ValueError as exc:
            raise GenerationError("server", f"Malformed response: {exc}", index) from exc

        logger.debug(
            "Generated %d bytes from %s",
            len(data),
            audio_url,
            extra=log_extra(paragraph_index=index),
        )
        return AudioHandle(
            index=index,
            data=data,
            content_type=content_type,
            source_url=audio_url,
        )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("AllTalkHTTP closed")
