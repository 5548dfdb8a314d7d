"""Core wiring — one dispatcher and wake scheduler, plus per-account mutation queues and outboxes."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from mailsync.config import Settings, settings as default_settings
from mailsync.errors import StorageError
from mailsync.services.connectivity import Connectivity
from mailsync.services.dispatcher import SyncDispatcher, build_backend, select_backend_mode
from mailsync.services.environment import Environment
from mailsync.services.mutation_queue import QUEUE_KEY_PREFIX, MutationQueue
from mailsync.services.outbox import OutboxService
from mailsync.services.scheduler import WakeScheduler
from mailsync.services.store import Store

logger = logging.getLogger(__name__)

PENDING_OUTBOX_STATUSES = ("pending", "scheduled")


@dataclass
class AccountServices:
    account: str
    mutations: MutationQueue
    outbox: OutboxService


class MailCore:
    """Owns every engine instance; nothing here is module-global."""

    def __init__(
        self,
        store: Store,
        remote,
        connectivity: Optional[Connectivity] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.store = store
        self.remote = remote
        self.connectivity = connectivity or Connectivity()
        self.dispatcher = SyncDispatcher()
        self.scheduler = WakeScheduler(
            self.connectivity,
            [self.process_all],
            heartbeat_seconds=self.config.heartbeat_seconds,
            debounce_ms=self.config.wake_debounce_ms,
        )
        self._accounts: dict[str, AccountServices] = {}

    @property
    def env(self) -> Environment:
        if self.dispatcher.backend is None:
            raise RuntimeError("MailCore.start() has not been called")
        return self.dispatcher.backend.env

    async def start(self, background_capable: bool = False) -> None:
        mode = select_backend_mode(self.config.sync_backend, background_capable)
        await self.dispatcher.initialize(build_backend(mode, self.store, self.remote, self.connectivity))
        self.scheduler.start()

    def account(self, account: Optional[str] = None) -> AccountServices:
        account = account or self.config.default_account
        services = self._accounts.get(account)
        if services is None:
            services = AccountServices(
                account=account,
                mutations=MutationQueue(self.env, account, self.config.mutation_retry_policy),
                outbox=OutboxService(
                    self.env,
                    account,
                    self.config.outbox_retry_policy,
                    send_delay_ms=self.config.outbox_send_delay_ms,
                ),
            )
            self._accounts[account] = services
        return services

    async def discover_accounts(self) -> list[str]:
        """Register every account that still has queued mutations or unsent mail in storage."""
        keys = await self.store.list_meta_keys(QUEUE_KEY_PREFIX)
        accounts = {key[len(QUEUE_KEY_PREFIX):] for key in keys}
        accounts.update(await self.store.list_outbox_accounts(PENDING_OUTBOX_STATUSES))
        for account in sorted(accounts):
            self.account(account)
        return sorted(accounts)

    async def process_all(self) -> None:
        """Run one mutation pass and one outbox pass for every account with queued work."""
        try:
            await self.discover_accounts()
        except StorageError as e:
            logger.error(f"Could not list accounts with queued work: {e}")

        for services in list(self._accounts.values()):
            try:
                await services.mutations.process()
                await services.outbox.process_outbox()
            except Exception as e:
                logger.error(f"Queue processing failed for {services.account}: {e}")

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        for services in self._accounts.values():
            await services.mutations.join()
            await services.outbox.join()
        await self.dispatcher.destroy()


def get_core(request: Request) -> MailCore:
    """FastAPI dependency: the MailCore built by the application lifespan."""
    return request.app.state.core
