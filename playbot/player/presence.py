"""
Presence Monitor - polls a destination for listeners
"""
import asyncio
import logging
from typing import Awaitable, Callable

from playbot.player.errors import DestinationUnreachableError
from playbot.player.models import Destination

logger = logging.getLogger(__name__)


class PresenceMonitor:
    """Reports whether anyone besides bots is at the destination."""

    DEFAULT_INTERVAL = 5.0
    DEFAULT_MISS_LIMIT = 3

    def __init__(
        self,
        destination: Destination,
        interval: float = DEFAULT_INTERVAL,
        miss_limit: int = DEFAULT_MISS_LIMIT,
    ):
        self.destination = destination
        self.interval = interval
        self.miss_limit = miss_limit
        self.misses = 0

    def tick(self) -> bool | None:
        """True if at least one listener is present, None if the destination can't be queried."""
        try:
            return self.destination.listener_count() > 0
        except DestinationUnreachableError as e:
            logger.warning(f"Presence check failed: {e}")
            return None

    async def run(self, callback: Callable[[bool | None], Awaitable[None]]) -> None:
        """Poll until cancelled. Raises DestinationUnreachableError after too many failed checks."""
        while True:
            present = self.tick()
            if present is None:
                self.misses += 1
                if self.misses >= self.miss_limit:
                    raise DestinationUnreachableError(
                        f"Destination could not be queried {self.misses} times in a row."
                    )
            else:
                self.misses = 0

            await callback(present)
            await asyncio.sleep(self.interval)
