"""
Test MailCore wiring across restarts: queued work for any account survives and is drained.
"""
import pytest

from mailsync.config import Settings
from mailsync.core import MailCore
from mailsync.services.connectivity import Connectivity

EMAIL = {"from": "bob@example.com", "to": ["amy@example.com"], "subject": "Queued while offline"}


@pytest.fixture
def config():
    return Settings(
        auth_token="tok",
        sync_backend="foreground",
        outbox_send_delay_ms=0,
        wake_debounce_ms=0,
        heartbeat_seconds=3600,
    )


async def queue_offline_work(store, remote, config):
    """Queue a mutation and an email for a non-default account, then shut the core down."""
    core = MailCore(store, remote, Connectivity(online=False), config=config)
    await core.start()
    bob = core.account("bob")
    await bob.mutations.enqueue("toggleStar", {"message_id": "42", "folder": "INBOX", "flags": []})
    await bob.outbox.queue_email(EMAIL)
    await core.shutdown()


class TestRestart:
    async def test_reconnect_drains_other_accounts(self, store, remote, config):
        await queue_offline_work(store, remote, config)
        assert remote.calls == []

        connectivity = Connectivity(online=False)
        core = MailCore(store, remote, connectivity, config=config)
        await core.start()

        await connectivity.set_online(True)

        update = remote.calls_for("MessageUpdate")
        assert len(update) == 1
        assert update[0][1]["flags"] == ["\\Flagged"]
        assert len(remote.calls_for("Emails")) == 1
        assert await core.account("bob").mutations.pending_count() == 0
        assert (await core.account("bob").outbox.get_outbox_stats())["sent"] == 1
        await core.shutdown()

    async def test_heartbeat_drains_other_accounts(self, store, remote, config):
        await queue_offline_work(store, remote, config)

        core = MailCore(store, remote, Connectivity(online=True), config=config)
        await core.start()

        assert await core.scheduler.wake("heartbeat") is True

        assert len(remote.calls_for("MessageUpdate")) == 1
        assert len(remote.calls_for("Emails")) == 1
        await core.shutdown()

    async def test_discover_accounts(self, store, remote, config):
        await queue_offline_work(store, remote, config)

        core = MailCore(store, remote, Connectivity(online=False), config=config)
        await core.start()

        assert await core.discover_accounts() == ["bob"]
        await core.shutdown()

    async def test_sent_mail_does_not_register_account(self, store, remote, config):
        core = MailCore(store, remote, Connectivity(online=True), config=config)
        await core.start()
        carol = core.account("carol")
        await carol.outbox.queue_email(EMAIL)
        await carol.outbox.join()
        await core.shutdown()

        fresh = MailCore(store, remote, Connectivity(online=False), config=config)
        await fresh.start()

        assert await fresh.discover_accounts() == []
        await fresh.shutdown()
