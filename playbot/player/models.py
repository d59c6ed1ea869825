"""
Player data model - tracks, session state and events
"""
import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol


@dataclass(frozen=True)
class Track:
    """One playable item. `ref` is the canonical reference and the dedupe key."""
    ref: str
    title: str


class SinkState(enum.Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR = "error"


class SessionState(enum.Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"


class EventKind(enum.Enum):
    TRACK_STARTED = "track_started"
    QUEUE_FINISHED = "queue_finished"
    PLAYBACK_EXHAUSTED = "playback_exhausted"
    PAUSED = "paused"
    RESUMED = "resumed"
    SESSION_CLOSED = "session_closed"


@dataclass(frozen=True)
class PlayerEvent:
    kind: EventKind
    destination_id: int
    track: Track | None = None
    error: Exception | None = None


FinishCallback = Callable[[Exception | None], Awaitable[None]]
EventListener = Callable[[PlayerEvent], Awaitable[None]]


class MediaSource(Protocol):
    """Resolves references to tracks and opens audio streams for them."""

    async def resolve(self, ref: str) -> Track: ...

    async def resolve_playlist(self, ref: str) -> list[Track]: ...

    async def open_stream(self, track: Track) -> Any: ...


class PlaybackSink(Protocol):
    """Renders one audio stream at a time to a destination."""

    @property
    def state(self) -> SinkState: ...

    def play(self, stream: Any, on_finish: FinishCallback) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    async def close(self) -> None: ...


class Destination(Protocol):
    """The output location whose occupants decide presence."""

    def listener_count(self) -> int: ...


@dataclass
class PlaybackSession:
    """Live binding between a controller and its sink."""
    destination_id: int
    sink: PlaybackSink
    state: SessionState = SessionState.IDLE
    has_listeners: bool | None = None  # None until the first presence tick
    closed: bool = False

    @property
    def paused(self) -> bool:
        return self.state is SessionState.PAUSED

    @property
    def active(self) -> bool:
        return self.state is not SessionState.IDLE
