"""
YouTube Media Source - yt-dlp extraction and FFmpeg audio streams
"""
import asyncio
import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor
from functools import partial, wraps

import discord
import yt_dlp

from playbot.player.errors import ResolutionError, StreamingError
from playbot.player.models import Track

logger = logging.getLogger(__name__)


def retry_with_backoff(retries=2, backoff_in_seconds=1, exceptions=(asyncio.TimeoutError,)):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e!r}")
                        raise
                    sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                    logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e!r}")
                    await asyncio.sleep(sleep)
                    x += 1
        return wrapper
    return decorator


class YouTubeService:
    """Resolves references with yt-dlp and opens Opus streams through FFmpeg."""

    FFMPEG_OPTIONS = {
        "before_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -nostdin",
        "options": "-vn",
    }
    EXTRACT_TIMEOUT = 25.0
    PROBE_TIMEOUT = 10.0

    def __init__(self, cookies_path: str | None = None, playlist_limit: int = 100):
        # Dedicated executor so extraction never blocks the event loop
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")
        self.playlist_limit = playlist_limit

        self._ydl_opts = {
            "format": "bestaudio/best",
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "ignoreerrors": True,
            "logtostderr": False,
            "noplaylist": True,
            # Plain text is handed to the extractor's own lookup
            "default_search": "ytsearch",
        }
        if cookies_path:
            self._ydl_opts["cookiefile"] = cookies_path

        self._playlist_opts = {
            **self._ydl_opts,
            "noplaylist": False,
            "extract_flat": "in_playlist",
            "playlistend": playlist_limit,
        }

    def parse_url(self, url: str) -> tuple[str, str] | None:
        """Parse YouTube URL to (type, id)."""
        if not any(domain in url for domain in ["youtube.com", "youtu.be", "music.youtube.com"]):
            return None

        # watch?v=ID, /v/ID, /embed/ID, youtu.be/ID; a video id wins over a list id
        match = re.search(r"(?:v=|\/|embed\/|youtu\.be\/)([0-9A-Za-z_-]{11})", url)
        if match:
            return "video", match.group(1)

        match = re.search(r"(?:list=)([a-zA-Z0-9_-]+)", url)
        if match:
            return "playlist", match.group(1)

        return None

    def canonical_ref(self, url: str) -> str:
        """Collapse the many YouTube URL shapes of one video into a single reference."""
        parsed = self.parse_url(url)
        if parsed and parsed[0] == "video":
            return f"https://www.youtube.com/watch?v={parsed[1]}"
        return url

    def to_track(self, info: dict, fallback_ref: str = "") -> Track:
        url = info.get("webpage_url") or info.get("url")
        if not url and info.get("id") and info.get("ie_key", info.get("extractor_key")) == "Youtube":
            url = f"https://www.youtube.com/watch?v={info['id']}"
        ref = self.canonical_ref(url or fallback_ref)
        if not ref:
            raise ResolutionError("Extractor returned an entry without a reference.")
        return Track(ref=ref, title=info.get("title") or "Unknown")

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    @retry_with_backoff()
    async def _extract(self, ref: str, opts: dict) -> dict | None:
        loop = asyncio.get_running_loop()

        def extract():
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(ref, download=False)

        return await asyncio.wait_for(
            loop.run_in_executor(self.executor, extract),
            timeout=self.EXTRACT_TIMEOUT,
        )

    async def resolve(self, ref: str) -> Track:
        """Resolve a URL or query to a single track."""
        try:
            info = await self._extract(ref, self._ydl_opts)
        except asyncio.TimeoutError:
            raise ResolutionError(f"Timed out looking up: {ref}")
        except yt_dlp.utils.DownloadError as e:
            raise ResolutionError(f"Could not resolve {ref}: {e}") from e

        # Search results come back as a one-entry playlist
        if info and info.get("entries") is not None:
            entries = [entry for entry in info["entries"] if entry]
            info = entries[0] if entries else None

        if not info:
            raise ResolutionError(f"No results found for: {ref}")

        track = self.to_track(info, fallback_ref=ref)
        logger.info(f"Resolved {ref} -> {track.title}")
        return track

    async def resolve_playlist(self, ref: str) -> list[Track]:
        """Resolve a playlist URL to its entries, up to playlist_limit."""
        try:
            info = await self._extract(ref, self._playlist_opts)
        except asyncio.TimeoutError:
            raise ResolutionError(f"Timed out loading playlist: {ref}")
        except yt_dlp.utils.DownloadError as e:
            raise ResolutionError(f"Could not load playlist {ref}: {e}") from e

        if not info or info.get("entries") is None:
            raise ResolutionError(f"Not a playlist: {ref}")

        tracks = []
        for entry in list(info["entries"])[:self.playlist_limit]:
            if not entry:
                continue
            try:
                tracks.append(self.to_track(entry))
            except ResolutionError as e:
                logger.debug(f"Skipping playlist entry: {e}")

        logger.info(f"Loaded {len(tracks)} tracks from playlist {ref}")
        return tracks

    async def get_stream_url(self, track: Track) -> str:
        """Get the direct audio URL for a track using yt-dlp."""
        try:
            info = await self._extract(track.ref, self._ydl_opts)
        except asyncio.TimeoutError:
            raise StreamingError(f"Stream URL extraction timed out for {track.title}")
        except yt_dlp.utils.DownloadError as e:
            raise StreamingError(f"Could not extract a stream for {track.title}: {e}") from e

        url = info.get("url") if info else None
        if not url:
            raise StreamingError(f"No audio stream available for {track.title}")
        return url

    async def open_stream(self, track: Track) -> discord.FFmpegOpusAudio:
        """Open an Opus audio source for a track."""
        url = await self.get_stream_url(track)
        try:
            source = await asyncio.wait_for(
                discord.FFmpegOpusAudio.from_probe(url, **self.FFMPEG_OPTIONS),
                timeout=self.PROBE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise StreamingError(f"Audio probe timed out for {track.title}")
        except Exception as e:
            raise StreamingError(f"Audio probe failed for {track.title}: {e}") from e

        logger.debug(f"Audio probe finished for {track.title}")
        return source
