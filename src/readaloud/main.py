"""Readaloud main entrypoint.

Loads config, segments the document, wires the AllTalk adapter and timed
renderer into a buffered playback controller, and reads the document
until it completes or fails.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from readaloud.adapters.generation.alltalk_http import AllTalkHTTPAdapter
from readaloud.adapters.render.timed import TimedRenderer
from readaloud.config import get_settings
from readaloud.logging import get_logger, log_extra, setup_logging
from readaloud.playback.controller import BufferedPlaybackController
from readaloud.playback.state_machine import PlaybackStatus
from readaloud.playback.status import PlaybackSnapshot
from readaloud.text.segmenter import SegmenterConfig, split_paragraphs


async def main() -> None:
    """Read ``document_path`` aloud."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = get_logger("main")

    logger.info("Readaloud starting up")
    logger.info("TTS backend: %s", settings.tts_base_url)
    logger.info(
        "Buffer: target=%d min=%d", settings.buffer_target_size, settings.buffer_min_size
    )

    if not settings.document_path:
        logger.error("No document configured (set DOCUMENT_PATH)")
        return

    text = Path(settings.document_path).read_text(encoding="utf-8")
    paragraphs = split_paragraphs(text, SegmenterConfig.from_settings(settings))
    if not paragraphs:
        logger.error("Document %s has no readable text", settings.document_path)
        return

    port = AllTalkHTTPAdapter(settings)
    renderer = TimedRenderer(
        playback_rate=settings.playback_rate,
        output_dir=settings.render_output_dir or None,
    )
    controller = BufferedPlaybackController.from_settings(settings, port, renderer, paragraphs)
    finished = asyncio.Event()

    def on_snapshot(snapshot: PlaybackSnapshot) -> None:
        buffer = snapshot.buffer_status
        logger.info(
            "%s at paragraph %d/%d, %d buffered%s",
            snapshot.status,
            snapshot.current_index + 1,
            controller.total_paragraphs,
            buffer.buffer_size,
            f", generating {buffer.generating_index + 1}" if buffer.is_generating else "",
            extra=log_extra(
                session_id=controller.session.session_id,
                status=snapshot.status.value,
                paragraph_index=snapshot.current_index,
                event="snapshot",
            ),
        )
        if snapshot.status in (PlaybackStatus.COMPLETED, PlaybackStatus.ERROR):
            finished.set()

    controller.subscribe(on_snapshot)

    try:
        controller.start(settings.start_index)
        if controller.status is PlaybackStatus.IDLE:
            logger.error("Could not start at paragraph %d", settings.start_index + 1)
            return
        await finished.wait()
        if controller.error:
            logger.error("Playback stopped: %s", controller.error)
        else:
            logger.info("Finished reading %d paragraphs", controller.total_paragraphs)

    except KeyboardInterrupt:
        logger.info("Shutting down (keyboard interrupt)")
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=True)
    finally:
        await controller.close()
        await port.close()
        logger.info("Readaloud shut down")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
