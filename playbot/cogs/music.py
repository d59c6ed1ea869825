"""
Music Cog - text commands routed to per-channel queue controllers
"""
import asyncio
import logging

import discord
from discord.ext import commands

from playbot.config import config
from playbot.player.controller import QueueController
from playbot.player.errors import DestinationUnreachableError, PlaybackExhaustedError, PlayerError
from playbot.player.models import EventKind, PlayerEvent
from playbot.player.presence import PresenceMonitor
from playbot.player.registry import SessionRegistry
from playbot.services.voice import VoiceDestination, VoiceSink
from playbot.services.youtube import YouTubeService

logger = logging.getLogger(__name__)


class MusicCog(commands.Cog):
    """Playback commands and voice session management."""

    AUTO_CONNECT_INTERVAL = 60
    QUEUE_PAGE = 15

    def __init__(self, bot: commands.Bot, youtube: YouTubeService | None = None, sessions: SessionRegistry | None = None):
        self.bot = bot
        if youtube is None:
            youtube = YouTubeService(config.YTDL_COOKIES_PATH, config.PLAYLIST_LIMIT)
        self.youtube = youtube
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.text_channels: dict[int, int] = {}  # voice channel id -> text channel for announcements
        self._auto_connect_task: asyncio.Task | None = None

    async def cog_load(self):
        """Called when the cog is loaded."""
        if config.AUTO_JOIN_CHANNELS:
            self._auto_connect_task = asyncio.create_task(self._auto_connect_loop())
        logger.info("Music cog loaded")

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        if self._auto_connect_task:
            self._auto_connect_task.cancel()
        await self.sessions.close_all()
        await self.youtube.shutdown()
        logger.info("Music cog unloaded")

    # ==================== COMMANDS ====================

    @commands.command(name="play", help="Queue a song by URL or search term. Re-adding a queued song moves it to the end")
    async def play(self, ctx: commands.Context, *, query: str | None = None):
        if not query:
            await ctx.reply("❌ Please provide a URL or search term.")
            return

        controller = await self._bind(ctx)
        if controller is None:
            return

        try:
            track = await controller.add(query)
        except PlayerError as e:
            await self._fail(ctx, controller, e)
            return
        await ctx.send(f"🎵 Added to queue: **{track.title}**")

    @commands.command(name="playlist", help="Queue every song from a playlist URL")
    async def playlist(self, ctx: commands.Context, url: str | None = None):
        if not url:
            await ctx.reply("❌ Please provide a playlist URL.")
            return

        controller = await self._bind(ctx)
        if controller is None:
            return

        try:
            tracks = await controller.add_playlist(url)
        except PlayerError as e:
            await self._fail(ctx, controller, e)
            return
        await ctx.send(f"📋 Loaded {len(tracks)} songs from the playlist.")

    @commands.command(name="skip", help="Skip to the next song")
    async def skip(self, ctx: commands.Context):
        controller = await self._session_for(ctx, "❌ The queue is empty.")
        if controller is None:
            return

        try:
            track = await controller.skip()
        except PlayerError as e:
            await self._fail(ctx, controller, e)
            return
        await ctx.send(f"⏭️ Skipped to: **{track.title}**")

    @commands.command(name="previous", help="Go back to the previous song")
    async def previous(self, ctx: commands.Context):
        controller = await self._session_for(ctx, "❌ The queue is empty.")
        if controller is None:
            return

        try:
            track = await controller.previous()
        except PlayerError as e:
            await self._fail(ctx, controller, e)
            return
        await ctx.send(f"⏮️ Went back to: **{track.title}**")

    @commands.command(name="queue", help="Show the queue")
    async def queue(self, ctx: commands.Context):
        controller = await self._session_for(ctx, "📭 The queue is empty.")
        if controller is None:
            return

        entries = await controller.list_queue()
        if not entries:
            await ctx.send("📭 The queue is empty.")
            return
        await ctx.send(self.format_queue(entries, controller))

    @commands.command(name="stop", help="Stop playback and leave the voice channel")
    async def stop(self, ctx: commands.Context):
        controller = await self._session_for(ctx, "❌ Nothing is playing.")
        if controller is None:
            return

        await self.sessions.close(controller.destination_id)
        await ctx.send("⏹️ Stopped and left the voice channel.")

    # ==================== HELPERS ====================

    def format_queue(self, entries: list[tuple[int, str]], controller: QueueController) -> str:
        playing = controller.cursor + 1 if controller.now_playing() else None
        lines = ["🎵 **Current queue:**"]
        for position, title in entries[:self.QUEUE_PAGE]:
            marker = "▶️ " if position == playing else ""
            lines.append(f"{marker}{position}. {title}")
        if len(entries) > self.QUEUE_PAGE:
            lines.append(f"...and {len(entries) - self.QUEUE_PAGE} more")
        return "\n".join(lines)

    @staticmethod
    def _author_channel(ctx: commands.Context) -> discord.VoiceChannel | None:
        voice = getattr(ctx.author, "voice", None)
        return voice.channel if voice else None

    async def _bind(self, ctx: commands.Context) -> QueueController | None:
        """Open (or reuse) the session for the author's voice channel."""
        channel = self._author_channel(ctx)
        if channel is None:
            await ctx.reply("❌ You need to be in a voice channel!")
            return None

        try:
            controller = await self.open_session(channel)
        except PlayerError as e:
            await ctx.reply(f"❌ {e.reply}")
            return None

        self.text_channels[channel.id] = ctx.channel.id
        return controller

    async def _session_for(self, ctx: commands.Context, missing: str) -> QueueController | None:
        """Find the guild's session and check the author is listening to it."""
        channel = self._author_channel(ctx)
        if channel is None:
            await ctx.reply("❌ You need to be in a voice channel!")
            return None

        controller = self.sessions.find_by_scope(ctx.guild.id)
        if controller is None:
            await ctx.send(missing)
            return None
        if controller.destination_id != channel.id:
            await ctx.reply("❌ You must be in the same voice channel as the bot.")
            return None

        self.text_channels[channel.id] = ctx.channel.id
        return controller

    async def _fail(self, ctx: commands.Context, controller: QueueController, error: PlayerError):
        # Exhaustion is already announced by the controller
        if not isinstance(error, PlaybackExhaustedError):
            await ctx.send(f"❌ {error.reply}")
        if isinstance(error, DestinationUnreachableError):
            await self.sessions.close(controller.destination_id)

    async def open_session(self, channel: discord.VoiceChannel) -> QueueController:
        """Connect to a voice channel and register a controller for it."""

        async def factory() -> QueueController:
            voice_client = channel.guild.voice_client
            try:
                if voice_client is None or not voice_client.is_connected():
                    voice_client = await channel.connect(self_deaf=True, timeout=20.0)
                elif voice_client.channel.id != channel.id:
                    await voice_client.move_to(channel)
            except (asyncio.TimeoutError, discord.ClientException) as e:
                raise DestinationUnreachableError(f"Failed to connect to {channel.name}: {e}") from e
            logger.info(f"Connected to {channel.name} in {channel.guild.name}")

            controller = QueueController(channel.id, self.youtube, VoiceSink(voice_client), listener=self._announce)
            controller.start_presence(PresenceMonitor(
                VoiceDestination(self.bot, channel.id),
                interval=config.PRESENCE_INTERVAL,
                miss_limit=config.PRESENCE_MISS_LIMIT,
            ))
            return controller

        return await self.sessions.open(channel.id, channel.guild.id, factory)

    async def _announce(self, event: PlayerEvent):
        """Post player events to the text channel last used with this session."""
        if event.kind is EventKind.SESSION_CLOSED:
            self.text_channels.pop(event.destination_id, None)
            return

        channel_id = self.text_channels.get(event.destination_id)
        channel = self.bot.get_channel(channel_id) if channel_id else None
        if channel is None:
            return

        if event.kind is EventKind.TRACK_STARTED:
            message = f"🎶 Now playing: **{event.track.title}**"
        elif event.kind is EventKind.QUEUE_FINISHED:
            message = "📭 Reached the end of the queue. Add more songs!"
        elif event.kind is EventKind.PLAYBACK_EXHAUSTED:
            message = f"❌ {event.error}"
        elif event.kind is EventKind.PAUSED:
            message = "⏸️ Paused - nobody is listening."
        elif event.kind is EventKind.RESUMED:
            message = "▶️ Resumed."
        else:
            return
        await channel.send(message)

    # ==================== EVENTS ====================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Tear down the session when the bot itself is disconnected or moved."""
        if member.id != self.bot.user.id or before.channel is None:
            return
        if after.channel is not None and after.channel.id == before.channel.id:
            return
        if before.channel.id in self.sessions:
            logger.info(f"Voice connection to {before.channel.name} dropped, closing session")
            await self.sessions.close(before.channel.id)

    async def _auto_connect_loop(self):
        """Keep the configured voice channels joined."""
        await self.bot.wait_until_ready()
        while True:
            try:
                for channel_id in config.AUTO_JOIN_CHANNELS:
                    if channel_id in self.sessions:
                        continue
                    channel = self.bot.get_channel(channel_id)
                    if not isinstance(channel, discord.VoiceChannel):
                        logger.warning(f"AutoConnect: {channel_id} is not a voice channel")
                        continue
                    try:
                        await self.open_session(channel)
                        logger.info(f"AutoConnect: joined {channel.name} in {channel.guild.name}")
                    except Exception as e:
                        logger.error(f"AutoConnect failed for {channel.name}: {e}")
            except Exception as e:
                logger.error(f"Error in AutoConnect loop: {e}")
            await asyncio.sleep(self.AUTO_CONNECT_INTERVAL)


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))
