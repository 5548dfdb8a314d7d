"""Sync engine — paginated pull of remote folder/message state into the local store."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mailsync.config import settings
from mailsync.errors import AuthError, StorageError
from mailsync.services.environment import Environment
from mailsync.services.normalizer import (
    NormalizedMessage,
    extract_folder_list,
    extract_message_list,
    normalize_body,
    normalize_folder,
    normalize_message,
)
from mailsync.services.retry import now_ms

logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    """Options for one sync pass. Accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account_id: str
    folder_id: str
    fetch_bodies: bool = False
    api_base: Optional[str] = None
    auth_token: Optional[str] = None
    page_size: int = Field(default=settings.sync_page_size, ge=1)
    max_messages: Optional[int] = Field(default=None, ge=1)


@dataclass
class FolderSyncState:
    cancelled: bool = False
    running: bool = False


@dataclass
class SyncContext:
    """Per-engine cooperative cancellation flags, keyed by (account, folder)."""

    folders: dict[tuple[str, str], FolderSyncState] = field(default_factory=dict)

    def begin(self, key: tuple[str, str]) -> None:
        self.folders[key] = FolderSyncState(cancelled=False, running=True)

    def finish(self, key: tuple[str, str]) -> None:
        self.folders[key] = FolderSyncState(cancelled=False, running=False)

    def cancel(self, key: tuple[str, str]) -> None:
        self.folders.setdefault(key, FolderSyncState()).cancelled = True

    def is_cancelled(self, key: tuple[str, str]) -> bool:
        state = self.folders.get(key)
        return bool(state and state.cancelled)

    def is_running(self, key: tuple[str, str]) -> bool:
        state = self.folders.get(key)
        return bool(state and state.running)


class SyncEngine:
    """Pulls folders and paginated messages per (account, folder).

    Failures never propagate to the caller: progress, completion, cancellation
    and errors are all reported through ``env.publish``.
    """

    def __init__(self, env: Environment, clock: Callable[[], int] = now_ms):
        self.env = env
        self.context = SyncContext()
        self._clock = clock

    async def start_sync(self, request: SyncRequest) -> None:
        account, folder = request.account_id, request.folder_id
        key = (account, folder)
        if not self.context.is_running(key):
            self.context.begin(key)
        await self.env.publish({
            "type": "syncProgress",
            "folder_id": folder,
            "status": "running",
            "pages_done": 0,
            "messages_done": 0,
        })

        try:
            if not request.auth_token:
                raise AuthError("Missing auth token for sync")
            options = {"auth_token": request.auth_token}
            if request.api_base:
                options["api_base"] = request.api_base

            # Step 1: cache folders (best effort)
            await self._sync_folders(account, options)

            # Step 2: paginated message sync
            previous = await self._read_manifest(account, folder)
            manifest = {
                "account": account,
                "folder": folder,
                "last_uid": None,
                "last_sync_at": self._clock(),
                "pages_fetched": 0,
                "messages_fetched": 0,
                "has_bodies_pass": bool(previous and previous.has_bodies_pass),
            }
            page = 1
            total = 0

            while True:
                if self.context.is_cancelled(key):
                    logger.info(f"Sync cancelled for {account}:{folder} at page {page}")
                    await self.env.publish({
                        "type": "syncCancelled",
                        "folder_id": folder,
                        "pages_done": manifest["pages_fetched"],
                        "messages_done": manifest["messages_fetched"],
                        "last_uid": manifest["last_uid"],
                    })
                    return

                response = await self.env.remote_call(
                    "MessageList",
                    {"folder": folder, "page": page, "limit": request.page_size},
                    options,
                )
                raw_list = extract_message_list(response)
                if not raw_list:
                    break

                now = self._clock()
                mapped = [
                    msg
                    for msg in (normalize_message(raw, account, folder, now) for raw in raw_list if isinstance(raw, dict))
                    if msg is not None
                ]
                await self.env.store.upsert_messages([msg.to_row() for msg in mapped])
                if request.fetch_bodies:
                    await self._fetch_bodies(mapped, key, options)

                total += len(mapped)
                manifest.update(
                    last_sync_at=now,
                    pages_fetched=page,
                    messages_fetched=total,
                    last_uid=mapped[0].id if mapped else manifest["last_uid"],
                    has_bodies_pass=manifest["has_bodies_pass"] or request.fetch_bodies,
                )
                await self.env.store.write_manifest(manifest)
                await self.env.publish({
                    "type": "syncProgress",
                    "folder_id": folder,
                    "status": "running",
                    "pages_done": manifest["pages_fetched"],
                    "messages_done": manifest["messages_fetched"],
                    "last_uid": manifest["last_uid"],
                })

                page += 1
                if request.max_messages and total >= request.max_messages:
                    break

            logger.info(f"Sync complete for {account}:{folder}: {total} messages in {manifest['pages_fetched']} pages")
            await self.env.publish({
                "type": "syncComplete",
                "folder_id": folder,
                "messages_done": manifest["messages_fetched"],
                "last_uid": manifest["last_uid"],
                "last_sync_at": manifest["last_sync_at"],
            })

        except Exception as e:
            logger.error(f"Sync failed for {account}:{folder}: {e}")
            await self.env.publish({
                "type": "syncProgress",
                "folder_id": folder,
                "status": "error",
                "error": str(e),
                "pages_done": 0,
                "messages_done": 0,
            })
        finally:
            self.context.finish(key)

    def accept(self, account_id: str, folder_id: str) -> None:
        """Mark a sync as started ahead of ``start_sync``; later cancels are kept."""
        self.context.begin((account_id, folder_id))

    def cancel_sync(self, account_id: str, folder_id: str) -> None:
        """Request cancellation; observed at the next page boundary."""
        self.context.cancel((account_id, folder_id))

    def is_running(self, account_id: str, folder_id: str) -> bool:
        return self.context.is_running((account_id, folder_id))

    async def get_sync_status(self, account_id: str, folder_id: str) -> None:
        """Publish the persisted manifest as an ``idle`` progress event."""
        manifest = await self._read_manifest(account_id, folder_id)
        await self.env.publish({
            "type": "syncProgress",
            "folder_id": folder_id,
            "status": "idle",
            "pages_done": manifest.pages_fetched if manifest else 0,
            "messages_done": manifest.messages_fetched if manifest else 0,
            "last_uid": manifest.last_uid if manifest else None,
            "last_sync_at": manifest.last_sync_at if manifest else None,
        })

    async def _read_manifest(self, account: str, folder: str):
        try:
            return await self.env.store.read_manifest(account, folder)
        except StorageError:
            return None

    async def _sync_folders(self, account: str, options: dict) -> None:
        try:
            response = await self.env.remote_call("Folders", {}, options)
            now = self._clock()
            rows = [
                row
                for row in (normalize_folder(f, account, now) for f in extract_folder_list(response) if isinstance(f, dict))
                if row is not None
            ]
            if rows:
                await self.env.store.upsert_folders(rows)
        except Exception as e:
            logger.warning(f"Folder fetch skipped for {account}: {e}")

    async def _fetch_bodies(self, messages: list[NormalizedMessage], key: tuple[str, str], options: dict) -> None:
        bodies = []
        for msg in messages:
            if self.context.is_cancelled(key):
                break
            try:
                detail = await self.env.remote_call("Message", {"id": msg.id, "folder": msg.folder}, options)
                bodies.append(normalize_body(detail, msg, self._clock()))
            except Exception as e:
                logger.warning(f"Body fetch failed for {msg.account}:{msg.folder}:{msg.id}: {e}")

        if bodies:
            await self.env.store.upsert_bodies(bodies)
