"""
Voice Adapters - discord.py voice client as playback sink and presence destination
"""
import asyncio
import logging

import discord

from playbot.player.errors import DestinationUnreachableError, StreamingError
from playbot.player.models import FinishCallback, SinkState

logger = logging.getLogger(__name__)


class VoiceSink:
    """Plays audio sources into a connected voice client."""

    def __init__(self, voice_client: discord.VoiceClient, loop: asyncio.AbstractEventLoop | None = None):
        self.voice_client = voice_client
        self.loop = loop or asyncio.get_running_loop()
        self._last_error: Exception | None = None

    @property
    def state(self) -> SinkState:
        if self.voice_client.is_paused():
            return SinkState.PAUSED
        if self.voice_client.is_playing():
            return SinkState.PLAYING
        if self._last_error:
            return SinkState.ERROR
        return SinkState.IDLE

    def play(self, stream: discord.AudioSource, on_finish: FinishCallback) -> None:
        if not self.voice_client.is_connected():
            stream.cleanup()
            raise DestinationUnreachableError("Not connected to voice.")

        self._last_error = None

        # discord.py calls this from its audio thread
        def after(error: Exception | None):
            self._last_error = error
            if self.loop.is_closed():
                return
            future = asyncio.run_coroutine_threadsafe(on_finish(error), self.loop)
            future.add_done_callback(self._report)

        try:
            self.voice_client.play(stream, after=after)
        except discord.ClientException as e:
            stream.cleanup()
            raise StreamingError(f"Voice client refused the stream: {e}") from e

    def pause(self) -> None:
        self.voice_client.pause()

    def resume(self) -> None:
        self.voice_client.resume()

    def stop(self) -> None:
        self.voice_client.stop()

    async def close(self) -> None:
        """Stop playing and leave the voice channel."""
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()
        try:
            await self.voice_client.disconnect(force=True)
        except Exception as e:
            logger.debug(f"Voice disconnect failed: {e}")

    @staticmethod
    def _report(future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error:
            logger.error(f"Finish callback failed: {error}")


class VoiceDestination:
    """Counts non-bot members of a voice channel."""

    def __init__(self, bot: discord.Client, channel_id: int):
        self.bot = bot
        self.channel_id = channel_id

    def listener_count(self) -> int:
        channel = self.bot.get_channel(self.channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise DestinationUnreachableError(f"Voice channel {self.channel_id} is no longer available.")
        return len([m for m in channel.members if not m.bot])
