"""
Queue Controller - playlist ownership and playback transitions for one voice channel
"""
import asyncio
import logging
from functools import partial
from typing import Awaitable, Callable

from playbot.player.errors import (
    DestinationUnreachableError,
    EmptyQueueError,
    PlaybackExhaustedError,
    PlayerError,
    ResolutionError,
    SessionClosedError,
    StreamingError,
)
from playbot.player.models import (
    EventKind,
    EventListener,
    MediaSource,
    PlaybackSession,
    PlaybackSink,
    PlayerEvent,
    SessionState,
    SinkState,
    Track,
)

logger = logging.getLogger(__name__)


class QueueController:
    """
    Owns the playlist, cursor and playback session of a single destination.

    Every operation runs under one asyncio.Lock, so commands, sink callbacks
    and presence ticks are applied one at a time in arrival order.
    """

    def __init__(
        self,
        destination_id: int,
        source: MediaSource,
        sink: PlaybackSink,
        listener: EventListener | None = None,
    ):
        self.destination_id = destination_id
        self.source = source
        self.session = PlaybackSession(destination_id=destination_id, sink=sink)
        self.playlist: list[Track] = []
        self.cursor = 0
        self.listener = listener
        # Installed by the registry; falls back to stop() when unset
        self.on_unreachable: Callable[["QueueController"], Awaitable[None]] | None = None

        self._lock = asyncio.Lock()
        self._generation = 0  # bumped whenever the sink's stream is replaced
        self._inflight: asyncio.Future | None = None
        self._presence_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def closed(self) -> bool:
        return self.session.closed

    def now_playing(self) -> Track | None:
        """Track currently playing or paused, if any."""
        if self.session.active and self.playlist:
            return self.playlist[self.cursor]
        return None

    # ==================== OPERATIONS ====================

    async def add(self, ref: str) -> Track:
        """Resolve a reference and append it, starting playback if nothing is running."""
        async with self._lock:
            self._ensure_open()
            track = await self._call_source(self.source.resolve(ref), ResolutionError)

            start = not self.playlist or not self.session.active
            index = self._append(track)
            logger.info(f"Queued {track.title} at position {index + 1} in {self.destination_id}")

            if start:
                self.cursor = index
                await self._play_current()
            return track

    async def add_playlist(self, ref: str) -> list[Track]:
        """Resolve a playlist and append every entry with the same dedupe rule as add()."""
        async with self._lock:
            self._ensure_open()
            tracks = await self._call_source(self.source.resolve_playlist(ref), ResolutionError)
            if not tracks:
                raise ResolutionError("That playlist has no playable entries.")

            start = not self.playlist or not self.session.active
            for track in tracks:
                self._append(track)
            logger.info(f"Queued {len(tracks)} tracks from playlist in {self.destination_id}")

            if start:
                refs = {track.ref for track in tracks}
                self.cursor = min(i for i, t in enumerate(self.playlist) if t.ref in refs)
                await self._play_current()
            return tracks

    async def skip(self) -> Track:
        return await self._step(1)

    async def previous(self) -> Track:
        return await self._step(-1)

    async def play_current(self) -> Track:
        async with self._lock:
            self._ensure_open()
            if not self.playlist:
                raise EmptyQueueError()
            return await self._play_current()

    async def list_queue(self) -> list[tuple[int, str]]:
        """1-indexed (position, title) snapshot of the playlist."""
        async with self._lock:
            return [(position, track.title) for position, track in enumerate(self.playlist, start=1)]

    async def stop(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self.session.closed:
            return
        self.session.closed = True

        if self._inflight and not self._inflight.done():
            self._inflight.cancel()
        if self._presence_task and self._presence_task is not asyncio.current_task():
            self._presence_task.cancel()

        async with self._lock:
            self._halt()
            await self.session.sink.close()

        logger.info(f"Playback session for {self.destination_id} closed")
        self._emit(EventKind.SESSION_CLOSED)

    # ==================== SINK EVENTS ====================

    async def on_sink_idle(self) -> Track | None:
        """The current track finished on its own."""
        async with self._lock:
            return await self._advance()

    async def on_sink_error(self, error: Exception) -> Track | None:
        logger.error(f"Playback error in {self.destination_id}: {error}")
        async with self._lock:
            return await self._advance()

    async def _sink_finished(self, generation: int, error: Exception | None) -> None:
        """Finish callback handed to the sink for one specific stream."""
        try:
            async with self._lock:
                if generation != self._generation or self.session.closed:
                    return  # stream was replaced or the session ended
                if error:
                    logger.error(f"Playback error in {self.destination_id}: {error}")
                await self._advance()
        except DestinationUnreachableError as e:
            await self._lost(e)
        except PlayerError as e:
            logger.warning(f"Auto-advance stopped in {self.destination_id}: {e}")

    # ==================== PRESENCE ====================

    def start_presence(self, monitor) -> None:
        """Run a PresenceMonitor for this session until it is stopped."""
        self._presence_task = asyncio.create_task(self._watch_presence(monitor))

    async def on_presence(self, present: bool | None) -> None:
        """Pause when the last listener leaves, resume when someone is back."""
        async with self._lock:
            if self.session.closed:
                return
            if present is None:
                logger.debug(f"Presence unknown for {self.destination_id}, keeping current state")
                return

            self.session.has_listeners = present
            if not present and self.session.state is SessionState.PLAYING:
                self.session.sink.pause()
                self.session.state = SessionState.PAUSED
                logger.info(f"Paused playback in {self.destination_id} - no listeners")
                self._emit(EventKind.PAUSED, track=self.now_playing())
            elif present and self.session.state is SessionState.PAUSED:
                self.session.sink.resume()
                self.session.state = SessionState.PLAYING
                logger.info(f"Resumed playback in {self.destination_id}")
                self._emit(EventKind.RESUMED, track=self.now_playing())

    async def _watch_presence(self, monitor) -> None:
        try:
            await monitor.run(self.on_presence)
        except DestinationUnreachableError as e:
            await self._lost(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Presence monitor for {self.destination_id} failed: {e}")

    # ==================== INTERNALS ====================

    async def _step(self, offset: int) -> Track:
        async with self._lock:
            self._ensure_open()
            if not self.playlist:
                raise EmptyQueueError()
            self.cursor = (self.cursor + offset) % len(self.playlist)
            return await self._play_current()

    async def _play_current(self) -> Track:
        """Start playlist[cursor], moving past broken tracks for at most one lap."""
        attempts = len(self.playlist)
        for _ in range(attempts):
            track = self.playlist[self.cursor]
            try:
                stream = await self._call_source(self.source.open_stream(track), StreamingError)
                self._start(track, stream)
            except (ResolutionError, StreamingError) as e:
                logger.warning(f"Could not play {track.title}, moving on: {e}")
                self.cursor = (self.cursor + 1) % len(self.playlist)
                continue
            return track

        self._halt()
        error = PlaybackExhaustedError(f"None of the {attempts} tracks in the queue could be played.")
        logger.error(f"Playback exhausted in {self.destination_id}: {error}")
        self._emit(EventKind.PLAYBACK_EXHAUSTED, error=error)
        raise error

    async def _advance(self) -> Track | None:
        if self.session.closed or not self.session.active or not self.playlist:
            return None
        if self.cursor >= len(self.playlist) - 1:
            self.session.state = SessionState.IDLE
            logger.info(f"Reached the end of the queue in {self.destination_id}")
            self._emit(EventKind.QUEUE_FINISHED)
            return None
        self.cursor += 1
        return await self._play_current()

    def _start(self, track: Track, stream) -> None:
        sink = self.session.sink
        self._generation += 1
        if sink.state in (SinkState.PLAYING, SinkState.PAUSED):
            sink.stop()
        sink.play(stream, partial(self._sink_finished, self._generation))

        if self.session.has_listeners is False:
            sink.pause()
            self.session.state = SessionState.PAUSED
        else:
            self.session.state = SessionState.PLAYING
        logger.info(f"Playing: {track.title} ({self.cursor + 1}/{len(self.playlist)}) in {self.destination_id}")
        self._emit(EventKind.TRACK_STARTED, track=track)

    def _halt(self) -> None:
        sink = self.session.sink
        self._generation += 1
        if sink.state in (SinkState.PLAYING, SinkState.PAUSED):
            sink.stop()
        self.session.state = SessionState.IDLE

    def _append(self, track: Track) -> int:
        """Append with dedupe-by-move-to-end; the cursor keeps pointing at the same track."""
        for index, existing in enumerate(self.playlist):
            if existing.ref != track.ref:
                continue
            del self.playlist[index]
            if index < self.cursor:
                self.cursor -= 1
            elif index == self.cursor and self.session.active:
                self.cursor = len(self.playlist)  # the playing track moves to the end
            break
        self.playlist.append(track)
        return len(self.playlist) - 1

    async def _call_source(self, coro, failure: type[PlayerError]):
        """Await a MediaSource call so that stop() can cancel it."""
        self._inflight = asyncio.ensure_future(coro)
        try:
            return await self._inflight
        except asyncio.CancelledError:
            if self.session.closed:
                raise SessionClosedError()
            raise
        except PlayerError:
            raise
        except Exception as e:
            raise failure(str(e)) from e
        finally:
            self._inflight = None

    def _ensure_open(self) -> None:
        if self.session.closed:
            raise SessionClosedError()

    async def _lost(self, error: DestinationUnreachableError) -> None:
        logger.error(f"Lost destination {self.destination_id}: {error}")
        if self.on_unreachable:
            await self.on_unreachable(self)
        else:
            await self.stop()

    def _emit(self, kind: EventKind, track: Track | None = None, error: Exception | None = None) -> None:
        if self.listener is None:
            return
        event = PlayerEvent(kind=kind, destination_id=self.destination_id, track=track, error=error)
        task = asyncio.create_task(self._deliver(event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _deliver(self, event: PlayerEvent) -> None:
        try:
            await self.listener(event)
        except Exception as e:
            logger.error(f"Event listener failed for {event.kind.value}: {e}")
