import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from conftest import FakeSink, settle
from playbot.cogs import music
from playbot.cogs.music import MusicCog
from playbot.player.controller import QueueController
from playbot.player.models import EventKind, PlayerEvent, Track
from playbot.player.registry import SessionRegistry

GUILD_ID = 1
BOT_CHANNEL = 10
OTHER_CHANNEL = 11


def make_ctx(voice_channel_id=BOT_CHANNEL):
    guild = SimpleNamespace(id=GUILD_ID, name="guild", voice_client=None)
    voice = None
    if voice_channel_id is not None:
        voice = SimpleNamespace(channel=SimpleNamespace(id=voice_channel_id, name="music", guild=guild))
    return SimpleNamespace(
        author=SimpleNamespace(voice=voice),
        guild=guild,
        channel=SimpleNamespace(id=99),
        reply=AsyncMock(),
        send=AsyncMock(),
    )


async def invoke(cog, name, ctx, **kwargs):
    """Run a command callback the way the bot would once the cog is added."""
    command = getattr(cog, name)
    await command.callback(cog, ctx, **kwargs)


def last_message(ctx):
    mock = ctx.send if ctx.send.await_count else ctx.reply
    return mock.await_args.args[0]


@pytest.fixture
def sessions():
    return SessionRegistry()


@pytest.fixture
def cog(source, sessions):
    bot = MagicMock()
    bot.get_channel.return_value = SimpleNamespace(send=AsyncMock())
    return MusicCog(bot, youtube=source, sessions=sessions)


@pytest.fixture
async def bound(cog, sessions, source):
    """A session already playing in BOT_CHANNEL."""
    async def factory():
        return QueueController(BOT_CHANNEL, source, FakeSink(), listener=cog._announce)

    controller = await sessions.open(BOT_CHANNEL, GUILD_ID, factory)
    for ref in ("a", "b", "c"):
        await controller.add(ref)
    return controller


async def test_play_requires_argument(cog):
    ctx = make_ctx()
    await invoke(cog, "play", ctx, query=None)
    assert "provide a URL or search term" in last_message(ctx)


async def test_playlist_requires_argument(cog):
    ctx = make_ctx()
    await invoke(cog, "playlist", ctx, url=None)
    assert "provide a playlist URL" in last_message(ctx)


async def test_play_requires_voice_channel(cog):
    ctx = make_ctx(voice_channel_id=None)
    await invoke(cog, "play", ctx, query="song")
    assert "voice channel" in last_message(ctx)


async def test_play_adds_to_existing_session(cog, bound):
    ctx = make_ctx()
    await invoke(cog, "play", ctx, query="d")
    assert "Added to queue" in last_message(ctx)
    assert [t.ref for t in bound.playlist] == ["a", "b", "c", "d"]
    assert cog.text_channels[BOT_CHANNEL] == 99


async def test_play_from_other_channel_conflicts(cog, bound):
    ctx = make_ctx(voice_channel_id=OTHER_CHANNEL)
    await invoke(cog, "play", ctx, query="d")
    assert "another voice channel" in last_message(ctx)
    assert len(bound.playlist) == 3


async def test_play_reports_resolution_failure(cog, bound, source):
    source.unknown.add("zzz")
    ctx = make_ctx()
    await invoke(cog, "play", ctx, query="zzz")
    assert last_message(ctx).startswith("❌")
    assert len(bound.playlist) == 3


async def test_skip_without_session(cog):
    ctx = make_ctx()
    await invoke(cog, "skip", ctx)
    assert "queue is empty" in last_message(ctx)


async def test_skip_from_other_channel_is_rejected(cog, bound):
    ctx = make_ctx(voice_channel_id=OTHER_CHANNEL)
    await invoke(cog, "skip", ctx)
    assert "same voice channel" in last_message(ctx)
    assert bound.cursor == 0


async def test_skip_and_previous(cog, bound):
    ctx = make_ctx()
    await invoke(cog, "skip", ctx)
    assert "B" in last_message(ctx)
    await invoke(cog, "previous", ctx)
    assert "A" in last_message(ctx)
    assert bound.cursor == 0


async def test_queue_lists_positions(cog, bound):
    ctx = make_ctx()
    await invoke(cog, "queue", ctx)
    message = last_message(ctx)
    assert "▶️ 1. A" in message
    assert "2. B" in message
    assert "3. C" in message


async def test_queue_page_is_truncated(cog, bound):
    for i in range(20):
        await bound.add(f"extra{i}")
    ctx = make_ctx()
    await invoke(cog, "queue", ctx)
    assert "...and 8 more" in last_message(ctx)


async def test_stop_closes_session(cog, bound, sessions):
    ctx = make_ctx()
    await invoke(cog, "stop", ctx)
    assert bound.closed
    assert BOT_CHANNEL not in sessions
    await invoke(cog, "stop", ctx)
    assert "Nothing is playing" in last_message(ctx)


async def test_announces_now_playing(cog):
    channel = SimpleNamespace(send=AsyncMock())
    cog.bot.get_channel.return_value = channel
    cog.text_channels[BOT_CHANNEL] = 99

    await cog._announce(PlayerEvent(EventKind.TRACK_STARTED, BOT_CHANNEL, track=Track("a", "Song A")))
    channel.send.assert_awaited_once()
    assert "Song A" in channel.send.await_args.args[0]


async def test_session_closed_forgets_text_channel(cog):
    cog.text_channels[BOT_CHANNEL] = 99
    await cog._announce(PlayerEvent(EventKind.SESSION_CLOSED, BOT_CHANNEL))
    assert BOT_CHANNEL not in cog.text_channels


async def test_bot_disconnect_tears_down_session(cog, bound, sessions):
    cog.bot.user.id = 777
    member = SimpleNamespace(id=777)
    before = SimpleNamespace(channel=SimpleNamespace(id=BOT_CHANNEL, name="music"))
    after = SimpleNamespace(channel=None)

    await cog.on_voice_state_update(member, before, after)
    await settle()
    assert bound.closed
    assert BOT_CHANNEL not in sessions


async def test_other_members_do_not_tear_down(cog, bound):
    cog.bot.user.id = 777
    member = SimpleNamespace(id=5)
    before = SimpleNamespace(channel=SimpleNamespace(id=BOT_CHANNEL, name="music"))
    await cog.on_voice_state_update(member, before, SimpleNamespace(channel=None))
    assert not bound.closed


def test_uses_the_registry_it_was_given(cog, sessions, source):
    assert len(sessions) == 0
    assert cog.sessions is sessions
    assert cog.youtube is source


async def test_unreachable_voice_during_skip_closes_session(cog, bound, sessions):
    bound.session.sink.unreachable = True
    ctx = make_ctx()
    await invoke(cog, "skip", ctx)
    assert last_message(ctx) == "❌ The voice channel is no longer reachable."
    assert bound.closed
    assert BOT_CHANNEL not in sessions


async def test_connect_failure_is_reported(cog, sessions):
    ctx = make_ctx()
    channel = ctx.author.voice.channel
    channel.connect = AsyncMock(side_effect=asyncio.TimeoutError())

    await invoke(cog, "play", ctx, query="song")
    assert "Failed to connect to music" in last_message(ctx)
    assert BOT_CHANNEL not in sessions
    assert BOT_CHANNEL not in cog.text_channels


async def test_exhausted_queue_is_reported_once(cog, bound, source):
    announcements = cog.bot.get_channel.return_value
    source.broken.update({"a", "b", "c"})
    ctx = make_ctx()

    await invoke(cog, "skip", ctx)
    await settle()

    ctx.send.assert_not_awaited()
    errors = [call.args[0] for call in announcements.send.await_args_list if call.args[0].startswith("❌")]
    assert errors == ["❌ None of the 3 tracks in the queue could be played."]


async def test_auto_connect_survives_unexpected_errors(cog, monkeypatch, caplog):
    monkeypatch.setattr(music.config, "AUTO_JOIN_CHANNELS", [BOT_CHANNEL])
    cog.AUTO_CONNECT_INTERVAL = 0.01
    cog.bot.wait_until_ready = AsyncMock()

    channel = MagicMock(spec=discord.VoiceChannel)
    channel.id = BOT_CHANNEL
    channel.name = "music"
    channel.guild.voice_client = None
    channel.connect = AsyncMock(side_effect=RuntimeError("PyNaCl library needed in order to use voice"))
    cog.bot.get_channel.return_value = channel

    task = asyncio.create_task(cog._auto_connect_loop())
    try:
        await asyncio.sleep(0.1)
        assert not task.done()
        assert channel.connect.await_count >= 2
        assert "PyNaCl library needed" in caplog.text
    finally:
        task.cancel()
