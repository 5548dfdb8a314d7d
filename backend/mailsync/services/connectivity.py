"""Connectivity signal — online flag plus listeners for the offline -> online transition."""

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[], Awaitable[None]]


class Connectivity:
    """Host-supplied online/offline state. The engines never probe the network themselves."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[Listener] = []

    @property
    def online(self) -> bool:
        return self._online

    def on_restored(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored")
            for listener in list(self._listeners):
                try:
                    await listener()
                except Exception as e:
                    logger.warning(f"Connectivity listener failed: {e}")
        elif was_online and not online:
            logger.info("Connectivity lost")
