"""Sync dispatcher — one command/event surface over whichever sync backend is active.

Backends:

  - foreground: the sync engine runs in the caller's event loop and events
    reach subscribers inline.
  - background: commands go through a channel to a worker task and events
    come back through the environment's outbound channel, so the work keeps
    going independently of the code that asked for it.

The backend is chosen once, at initialization, from a platform capability
signal. Every command and event is shape-checked and allowlisted; anything
else is dropped with a warning.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from mailsync.services.connectivity import Connectivity
from mailsync.services.environment import BackgroundEnvironment, Environment, ForegroundEnvironment
from mailsync.services.store import Store
from mailsync.services.sync_engine import SyncEngine, SyncRequest

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = frozenset({"startSync", "cancelSync", "syncStatus"})

ALLOWED_MESSAGE_TYPES = frozenset({
    "syncProgress",
    "syncComplete",
    "syncCancelled",
    "mutationQueueProcessed",
    "dbError",
})

# Core events that share the environment but are not sync events; filtered at DEBUG level.
OTHER_CORE_EVENTS = frozenset({"mutationQueueFailed", "outboxSent"})


def is_valid_payload(payload: Any) -> bool:
    return isinstance(payload, Mapping) and isinstance(payload.get("type"), str)


def select_backend_mode(requested: str, background_capable: bool) -> str:
    if requested in ("foreground", "background"):
        return requested
    return "background" if background_capable else "foreground"


def _ids(command: Mapping) -> Optional[tuple[str, str]]:
    account = command.get("account_id", command.get("accountId"))
    folder = command.get("folder_id", command.get("folderId"))
    if isinstance(account, str) and isinstance(folder, str):
        return account, folder
    return None


class SyncBackend(ABC):
    mode = "abstract"

    def __init__(self, env: Environment):
        self.env = env
        self.engine = SyncEngine(env)
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, command: Mapping) -> None:
        kind = command["type"]
        if kind == "startSync":
            try:
                request = SyncRequest.model_validate({k: v for k, v in command.items() if k != "type"})
            except ValidationError as e:
                logger.warning(f"Dropping invalid startSync command: {e.error_count()} error(s)")
                return
            # Accept before spawning so a cancelSync queued right behind us is not lost.
            self.engine.accept(request.account_id, request.folder_id)
            self._spawn(self.engine.start_sync(request))
            return

        ids = _ids(command)
        if ids is None:
            logger.warning(f"Dropping {kind} command without account/folder ids")
            return
        if kind == "cancelSync":
            self.engine.cancel_sync(*ids)
        elif kind == "syncStatus":
            self._spawn(self.engine.get_sync_status(*ids))

    @abstractmethod
    async def submit(self, command: Mapping) -> None:
        ...

    async def start(self) -> None:
        await self.env.start()

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.env.stop()


class ForegroundBackend(SyncBackend):
    mode = "foreground"

    async def submit(self, command: Mapping) -> None:
        await self._run(command)


class BackgroundBackend(SyncBackend):
    mode = "background"

    def __init__(self, env: Environment):
        super().__init__(env)
        self._commands: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    async def submit(self, command: Mapping) -> None:
        await self._commands.put(dict(command))

    async def start(self) -> None:
        await super().start()
        if self._worker is None:
            self._worker = asyncio.create_task(self._work())

    async def _work(self):
        while True:
            command = await self._commands.get()
            try:
                await self._run(command)
            except Exception as e:
                logger.error(f"Background sync command {command.get('type')} failed: {e}")
            finally:
                self._commands.task_done()

    async def join(self) -> None:
        await self._commands.join()
        await super().join()
        if isinstance(self.env, BackgroundEnvironment):
            await self.env.flush()

    async def stop(self) -> None:
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await super().stop()


def build_backend(mode: str, store: Store, remote, connectivity: Optional[Connectivity] = None) -> SyncBackend:
    if mode == "background":
        return BackgroundBackend(BackgroundEnvironment(store, remote, connectivity))
    return ForegroundBackend(ForegroundEnvironment(store, remote, connectivity))


class SyncDispatcher:
    """Validates and forwards sync commands and events for the active backend."""

    def __init__(self):
        self._backend: Optional[SyncBackend] = None

    @property
    def mode(self) -> Optional[str]:
        return self._backend.mode if self._backend else None

    @property
    def backend(self) -> Optional[SyncBackend]:
        return self._backend

    async def initialize(self, backend: SyncBackend) -> None:
        if self._backend is not None:
            logger.warning(f"Sync dispatcher already initialised in {self._backend.mode} mode")
            return
        self._backend = backend
        await backend.start()
        logger.info(f"Sync dispatcher using {backend.mode} backend")

    async def send_command(self, payload: Any) -> bool:
        """Forward a command to the backend. Returns False if it was dropped."""
        if not is_valid_payload(payload):
            logger.warning("Dropping invalid sync command payload")
            return False
        if payload["type"] not in ALLOWED_COMMANDS:
            logger.warning(f"Dropping unknown sync command type: {payload['type']}")
            return False
        if self._backend is None:
            logger.warning("No sync backend initialised")
            return False
        await self._backend.submit(payload)
        return True

    def on_message(self, handler: Callable[[Mapping], Any]) -> Callable[[], None]:
        """Subscribe to allowlisted sync events. Returns an unsubscribe function."""
        if not callable(handler) or self._backend is None:
            return lambda: None

        def listener(event):
            if not is_valid_payload(event):
                logger.warning("Dropping malformed sync event")
                return None
            if event["type"] not in ALLOWED_MESSAGE_TYPES:
                if event["type"] in OTHER_CORE_EVENTS:
                    logger.debug(f"Filtered non-sync event: {event['type']}")
                else:
                    logger.warning(f"Dropping unknown sync event type: {event['type']}")
                return None
            return handler(event)

        return self._backend.env.subscribe(listener)

    async def destroy(self) -> None:
        if self._backend is not None:
            await self._backend.stop()
        self._backend = None
