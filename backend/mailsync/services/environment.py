"""Environment capability — remote calls, durable storage and event publication.

The engines only ever talk to the outside world through an Environment:

    env.remote_call(action, params, options)   -> remote mail API
    env.store                                  -> durable record store
    await env.publish(event)                   -> event delivery to collaborators

Two concrete environments exist. ``ForegroundEnvironment`` delivers events to
subscribers inline; ``BackgroundEnvironment`` hands them to a channel that a
separate task drains, so the engines can keep running while nobody listens.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from mailsync.services.connectivity import Connectivity
from mailsync.services.store import Store

logger = logging.getLogger(__name__)

EventHandler = Callable[[Mapping], Any]


class Environment(ABC):
    name = "abstract"

    def __init__(self, store: Store, remote, connectivity: Optional[Connectivity] = None):
        self.store = store
        self.remote = remote
        self.connectivity = connectivity or Connectivity()
        self._handlers: list[EventHandler] = []
        store.add_error_listener(lambda error: self.publish(error.to_event()))

    @property
    def online(self) -> bool:
        return self.connectivity.online

    async def remote_call(self, action: str, params: Optional[dict] = None, options: Optional[dict] = None) -> Any:
        return await self.remote.request(action, params or {}, options or {})

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def _deliver(self, event: Mapping) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler failed for {event.get('type')}: {e}")

    @abstractmethod
    async def publish(self, event: dict) -> None:
        ...

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class ForegroundEnvironment(Environment):
    """Runs in the caller's task; events reach subscribers before publish() returns."""

    name = "foreground"

    async def publish(self, event: dict) -> None:
        await self._deliver(MappingProxyType(dict(event)))


class BackgroundEnvironment(Environment):
    """Queues events on a channel drained by a pump task, decoupled from the engines."""

    name = "background"

    def __init__(self, store: Store, remote, connectivity: Optional[Connectivity] = None):
        super().__init__(store, remote, connectivity)
        self._channel: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    async def publish(self, event: dict) -> None:
        await self._channel.put(MappingProxyType(dict(event)))

    async def start(self) -> None:
        if self._pump is None:
            self._pump = asyncio.create_task(self._drain())

    async def stop(self) -> None:
        if self._pump:
            await self.flush()
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._channel.join()

    async def _drain(self):
        while True:
            event = await self._channel.get()
            try:
                await self._deliver(event)
            finally:
                self._channel.task_done()
