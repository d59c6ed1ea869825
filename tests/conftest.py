import asyncio

import pytest

from playbot.player.controller import QueueController
from playbot.player.errors import DestinationUnreachableError, ResolutionError, StreamingError
from playbot.player.models import SinkState, Track


class FakeSource:
    """MediaSource whose tracks are titled after their refs."""

    def __init__(self):
        self.unknown: set[str] = set()   # refs that fail to resolve
        self.broken: set[str] = set()    # refs whose stream fails to open
        self.playlists: dict[str, list[str]] = {}
        self.opened: list[str] = []
        self.gate: asyncio.Event | None = None  # when set, resolve() waits on it

    async def resolve(self, ref):
        if self.gate is not None:
            await self.gate.wait()
        if ref in self.unknown:
            raise ResolutionError(f"No results found for: {ref}")
        return Track(ref=ref, title=ref.upper())

    async def resolve_playlist(self, ref):
        if ref not in self.playlists:
            raise ResolutionError(f"Not a playlist: {ref}")
        return [Track(ref=r, title=r.upper()) for r in self.playlists[ref]]

    async def open_stream(self, track):
        self.opened.append(track.ref)
        if track.ref in self.broken:
            raise StreamingError(f"dead link: {track.ref}")
        return f"stream:{track.ref}"


class FakeSink:
    """PlaybackSink that records calls instead of playing audio."""

    def __init__(self):
        self.state = SinkState.IDLE
        self.calls: list[str] = []
        self.stream = None
        self.on_finish = None
        self.closed = False
        self.unreachable = False

    def play(self, stream, on_finish):
        if self.unreachable:
            raise DestinationUnreachableError()
        self.calls.append(f"play {stream}")
        self.stream = stream
        self.on_finish = on_finish
        self.state = SinkState.PLAYING

    def pause(self):
        self.calls.append("pause")
        self.state = SinkState.PAUSED

    def resume(self):
        self.calls.append("resume")
        self.state = SinkState.PLAYING

    def stop(self):
        self.calls.append("stop")
        self.state = SinkState.IDLE

    async def close(self):
        self.closed = True
        self.state = SinkState.IDLE

    async def finish(self, error=None):
        """Simulate the current stream ending."""
        self.state = SinkState.ERROR if error else SinkState.IDLE
        await self.on_finish(error)

    @property
    def plays(self) -> list[str]:
        return [call for call in self.calls if call.startswith("play")]


class FakeDestination:
    def __init__(self, count=1):
        self.count = count
        self.gone = False

    def listener_count(self):
        if self.gone:
            raise DestinationUnreachableError("channel deleted")
        return self.count


class EventRecorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    @property
    def kinds(self):
        return [event.kind for event in self.events]


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def controller(source, sink, recorder):
    return QueueController(42, source, sink, listener=recorder)


def refs(controller):
    return [track.ref for track in controller.playlist]


async def settle():
    """Let background event deliveries run."""
    for _ in range(5):
        await asyncio.sleep(0)
