"""
Test the paginated sync engine against a scripted remote.
"""
import pytest

from conftest import make_records
from mailsync.errors import RemoteError
from mailsync.services.sync_engine import SyncContext, SyncEngine, SyncRequest


def request(**overrides):
    options = {"account_id": "acct", "folder_id": "INBOX", "auth_token": "tok", "page_size": 100}
    options.update(overrides)
    return SyncRequest(**options)


def of_type(events, kind):
    return [e for e in events if e["type"] == kind]


class TestSyncRequest:
    def test_accepts_camel_case_keys(self):
        req = SyncRequest.model_validate({"accountId": "a", "folderId": "INBOX", "fetchBodies": True})
        assert req.account_id == "a"
        assert req.folder_id == "INBOX"
        assert req.fetch_bodies is True

    def test_rejects_zero_page_size(self):
        with pytest.raises(ValueError):
            SyncRequest(account_id="a", folder_id="INBOX", page_size=0)


class TestSyncContext:
    def test_cancel_is_scoped_to_folder(self):
        context = SyncContext()
        context.begin(("a", "INBOX"))
        context.cancel(("a", "INBOX"))
        assert context.is_cancelled(("a", "INBOX"))
        assert not context.is_cancelled(("a", "Sent"))

    def test_begin_clears_previous_cancel(self):
        context = SyncContext()
        context.cancel(("a", "INBOX"))
        context.begin(("a", "INBOX"))
        assert not context.is_cancelled(("a", "INBOX"))
        assert context.is_running(("a", "INBOX"))


class TestStartSync:
    async def test_pages_through_all_messages(self, env, store, remote, events, clock):
        """250 messages at page size 100 -> 3 pages, manifest matches"""
        remote.messages["INBOX"] = make_records(250)
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request())

        assert await store.count_messages("acct", "INBOX") == 250
        manifest = await store.read_manifest("acct", "INBOX")
        assert manifest.pages_fetched == 3
        assert manifest.messages_fetched == 250
        assert manifest.last_sync_at == clock.now

        complete = of_type(events, "syncComplete")
        assert len(complete) == 1
        assert complete[0]["messages_done"] == 250
        assert complete[0]["folder_id"] == "INBOX"

        progress = [e for e in of_type(events, "syncProgress") if e["pages_done"]]
        assert [e["pages_done"] for e in progress] == [1, 2, 3]

    async def test_rerun_is_idempotent(self, env, store, remote, clock):
        """Second pass over unchanged data leaves the same row count and manifest counters"""
        remote.messages["INBOX"] = make_records(120)
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request())
        await engine.start_sync(request())

        assert await store.count_messages("acct") == 120
        manifest = await store.read_manifest("acct", "INBOX")
        assert manifest.pages_fetched == 2
        assert manifest.messages_fetched == 120

    async def test_stored_rows_are_normalized(self, env, store, remote, clock):
        remote.messages["INBOX"] = [{"Uid": 7, "Date": "not a date"}]
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request())

        message = await store.get_message("acct", "INBOX", "7")
        assert message.subject == "(No subject)"
        assert message.from_address == "Unknown"
        assert message.date_ms == clock.now
        assert message.is_unread is True

    async def test_cancel_during_page_stops_at_next_boundary(self, env, store, remote, events, clock):
        remote.messages["INBOX"] = make_records(500)
        engine = SyncEngine(env, clock=clock)

        def cancel_on_page_two(params, options):
            if params["page"] == 2:
                engine.cancel_sync("acct", "INBOX")

        remote.hooks["MessageList"] = cancel_on_page_two
        await engine.start_sync(request())

        cancelled = of_type(events, "syncCancelled")
        assert len(cancelled) == 1
        assert cancelled[0]["pages_done"] == 2
        assert cancelled[0]["messages_done"] == 200
        assert not of_type(events, "syncComplete")
        assert len(remote.calls_for("MessageList")) == 2

        manifest = await store.read_manifest("acct", "INBOX")
        assert manifest.pages_fetched == 2
        assert not engine.is_running("acct", "INBOX")

    async def test_cancel_after_accept_survives_start(self, env, store, remote, events, clock):
        """A cancel requested between acceptance and the task starting still stops the sync"""
        remote.messages["INBOX"] = make_records(30)
        engine = SyncEngine(env, clock=clock)

        engine.accept("acct", "INBOX")
        engine.cancel_sync("acct", "INBOX")
        await engine.start_sync(request(page_size=10))

        assert len(of_type(events, "syncCancelled")) == 1
        assert not of_type(events, "syncComplete")
        assert remote.calls_for("MessageList") == []
        assert await store.count_messages("acct") == 0

    async def test_stale_cancel_does_not_block_next_sync(self, env, store, remote, events, clock):
        remote.messages["INBOX"] = make_records(5)
        engine = SyncEngine(env, clock=clock)

        engine.cancel_sync("acct", "INBOX")
        await engine.start_sync(request())

        assert len(of_type(events, "syncComplete")) == 1
        assert await store.count_messages("acct") == 5

    async def test_missing_auth_reports_error(self, env, remote, events, clock):
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request(auth_token=None))

        errors = [e for e in of_type(events, "syncProgress") if e["status"] == "error"]
        assert len(errors) == 1
        assert "auth" in errors[0]["error"].lower()
        assert remote.calls == []

    async def test_folder_failure_is_not_fatal(self, env, store, remote, events, clock):
        remote.failures["Folders"] = RemoteError("folders down")
        remote.messages["INBOX"] = make_records(5)
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request())

        assert len(of_type(events, "syncComplete")) == 1
        assert await store.count_messages("acct") == 5

    async def test_folders_are_cached(self, env, store, remote, clock):
        remote.folders = [{"path": "INBOX", "name": "Inbox", "unread_count": 3}, {"path": "Sent"}]
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request())

        folders = await store.list_folders("acct")
        assert [f.path for f in folders] == ["INBOX", "Sent"]
        assert folders[0].unread_count == 3

    async def test_list_failure_reports_error_with_zero_counts(self, env, remote, events, clock):
        remote.failures["MessageList"] = RemoteError("Request failed 500: boom", status_code=500)
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request())

        errors = [e for e in of_type(events, "syncProgress") if e["status"] == "error"]
        assert len(errors) == 1
        assert errors[0]["pages_done"] == 0
        assert errors[0]["messages_done"] == 0
        assert not of_type(events, "syncComplete")
        assert not engine.is_running("acct", "INBOX")

    async def test_max_messages_stops_early(self, env, store, remote, clock):
        remote.messages["INBOX"] = make_records(300)
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request(max_messages=150))

        assert len(remote.calls_for("MessageList")) == 2
        assert await store.count_messages("acct") == 200

    async def test_fetch_bodies_tolerates_individual_failures(self, env, store, remote, clock):
        remote.messages["INBOX"] = make_records(3)
        remote.details["1"] = {"Result": {"html": "<p>Hello <b>there</b></p>"}}

        def fail_second(params, options):
            if params["id"] == "2":
                raise RemoteError("gone")

        remote.hooks["Message"] = fail_second
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request(fetch_bodies=True))

        first = await store.get_body("acct", "INBOX", "1")
        assert first.body == "<p>Hello <b>there</b></p>"
        assert first.text_content == "Hello there"
        assert await store.get_body("acct", "INBOX", "2") is None
        assert (await store.get_body("acct", "INBOX", "3")).text_content == "body of 3"
        manifest = await store.read_manifest("acct", "INBOX")
        assert manifest.has_bodies_pass is True

    async def test_per_request_credentials_reach_remote(self, env, remote, clock):
        engine = SyncEngine(env, clock=clock)

        await engine.start_sync(request(api_base="https://other.test"))

        _, _, options = remote.calls_for("MessageList")[0]
        assert options["auth_token"] == "tok"
        assert options["api_base"] == "https://other.test"


class TestSyncStatus:
    async def test_idle_status_reflects_manifest(self, env, remote, events, clock):
        remote.messages["INBOX"] = make_records(10)
        engine = SyncEngine(env, clock=clock)
        await engine.start_sync(request())
        events.clear()

        await engine.get_sync_status("acct", "INBOX")

        assert events == [{
            "type": "syncProgress",
            "folder_id": "INBOX",
            "status": "idle",
            "pages_done": 1,
            "messages_done": 10,
            "last_uid": "1",
            "last_sync_at": clock.now,
        }]

    async def test_idle_status_without_manifest(self, env, events):
        engine = SyncEngine(env)

        await engine.get_sync_status("acct", "Archive")

        assert events[0]["status"] == "idle"
        assert events[0]["messages_done"] == 0
        assert events[0]["last_uid"] is None
