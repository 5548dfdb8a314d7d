"""
Shared fixtures: per-test SQLite store, scripted remote API and a controllable clock.
"""
# Point settings at SQLite BEFORE mailsync is imported (database.py builds an engine at import time)
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import inspect

import pytest

from mailsync.database import make_engine
from mailsync.services.connectivity import Connectivity
from mailsync.services.environment import ForegroundEnvironment
from mailsync.services.store import Store

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRemote:
    """Scripted stand-in for the mail API. Records every call."""

    def __init__(self):
        self.calls = []
        self.folders = []
        self.messages = {}   # folder -> list of raw records
        self.details = {}    # message id -> detail response
        self.failures = {}   # action -> exception raised on every call
        self.hooks = {}      # action -> callable(params, options), may be async or raise

    async def request(self, action, params=None, options=None):
        params = params or {}
        options = options or {}
        self.calls.append((action, params, options))

        hook = self.hooks.get(action)
        if hook is not None:
            result = hook(params, options)
            if inspect.isawaitable(result):
                await result
        if action in self.failures:
            raise self.failures[action]

        if action == "Folders":
            return {"Result": self.folders}
        if action == "MessageList":
            records = self.messages.get(params["folder"], [])
            start = (params["page"] - 1) * params["limit"]
            return {"Result": {"List": records[start:start + params["limit"]]}}
        if action == "Message":
            return self.details.get(params["id"], {"Result": {"Plain": f"body of {params['id']}"}})
        return {"ok": True}

    def calls_for(self, action):
        return [call for call in self.calls if call[0] == action]


def make_records(count, start=1):
    return [
        {
            "Uid": str(i),
            "Subject": f"Message {i}",
            "Date": "2024-01-15T10:00:00Z",
            "From": {"Display": f"Sender {i}", "Email": f"sender{i}@example.com"},
            "flags": ["\\Seen"] if i % 2 else [],
        }
        for i in range(start, start + count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store(clock, tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'mail.db'}")
    store = Store(engine, clock=clock)
    assert await store.ensure_schema() is None
    yield store
    await store.dispose()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def connectivity():
    return Connectivity(online=True)


@pytest.fixture
def env(store, remote, connectivity):
    return ForegroundEnvironment(store, remote, connectivity)


@pytest.fixture
def events(env):
    """Every event published on the environment, as plain dicts."""
    received = []
    env.subscribe(lambda event: received.append(dict(event)))
    return received
