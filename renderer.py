"""Render collaborator: pushes decoded speech audio to the avatar stream."""

import logging

from errors import NotOpenError
from providers import RENDER_CLEAR_COMMAND

logger = logging.getLogger(__name__)


class RenderClient:
    """Audio-in side of the avatar renderer, on top of the render Transport."""

    def __init__(self, transport):
        self.transport = transport
        self.chunks_sent = 0
        self.clear_count = 0

    async def send_audio(self, chunk: bytes):
        """Push one raw PCM16 chunk. Raises NotOpenError if the stream is down."""
        await self.transport.send(bytes(chunk))
        self.chunks_sent += 1

    async def clear_buffer(self):
        """Drop any audio the renderer has queued but not yet played."""
        self.clear_count += 1
        try:
            await self.transport.send(RENDER_CLEAR_COMMAND)
        except NotOpenError as e:
            logger.debug("Render: Clear skipped, stream not open (%s)", e)

    def handle_message(self, raw):
        """Renderer notices are informational only."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        logger.debug("Render: %s", raw[:200])
