"""
Session Registry - one queue controller per voice channel
"""
import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable

from playbot.player.controller import QueueController
from playbot.player.errors import SessionConflictError

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Lookup of live controllers keyed by destination id.

    A scope (the guild) may hold at most one destination at a time. The
    registry never touches a controller's playlist; it only creates, finds
    and tears down controllers.
    """

    def __init__(self):
        self._controllers: dict[int, QueueController] = {}
        self._scopes: dict[int, int] = {}  # destination_id -> scope
        # Creation is serialised per scope only
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._controllers)

    def __contains__(self, destination_id: int) -> bool:
        return destination_id in self._controllers

    def get(self, destination_id: int) -> QueueController | None:
        return self._controllers.get(destination_id)

    def find_by_scope(self, scope: int) -> QueueController | None:
        for destination_id, owner in self._scopes.items():
            if owner == scope:
                return self._controllers[destination_id]
        return None

    async def open(
        self,
        destination_id: int,
        scope: int,
        factory: Callable[[], Awaitable[QueueController]],
    ) -> QueueController:
        """Return the controller bound to a destination, creating it if needed."""
        async with self._locks[scope]:
            existing = self._controllers.get(destination_id)
            if existing is not None:
                return existing

            if self.find_by_scope(scope) is not None:
                raise SessionConflictError()

            controller = await factory()
            controller.on_unreachable = self._on_unreachable
            self._controllers[destination_id] = controller
            self._scopes[destination_id] = scope
            logger.info(f"Opened playback session for {destination_id} (scope {scope})")
            return controller

    async def close(self, destination_id: int) -> bool:
        """Stop and forget the controller for a destination. Returns False if none was bound."""
        controller = self._controllers.pop(destination_id, None)
        self._scopes.pop(destination_id, None)
        if controller is None:
            return False
        await controller.stop()
        logger.info(f"Removed playback session for {destination_id}")
        return True

    async def close_all(self) -> None:
        for destination_id in list(self._controllers):
            try:
                await self.close(destination_id)
            except Exception as e:
                logger.error(f"Failed to close session {destination_id}: {e}")

    async def _on_unreachable(self, controller: QueueController) -> None:
        if self._controllers.get(controller.destination_id) is controller:
            await self.close(controller.destination_id)
        else:
            await controller.stop()
