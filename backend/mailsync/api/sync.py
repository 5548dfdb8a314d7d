"""Sync control and status API endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from mailsync.core import MailCore, get_core

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncStart(BaseModel):
    account_id: Optional[str] = None
    folder_id: str = "INBOX"
    fetch_bodies: bool = False
    page_size: Optional[int] = Field(default=None, ge=1)
    max_messages: Optional[int] = Field(default=None, ge=1)


class SyncTarget(BaseModel):
    account_id: Optional[str] = None
    folder_id: str = "INBOX"


class SyncStatus(BaseModel):
    account_id: str
    folder_id: str
    running: bool
    pages_fetched: int = 0
    messages_fetched: int = 0
    last_uid: Optional[str] = None
    last_sync_at: Optional[int] = None


async def _dispatch(core: MailCore, command: dict):
    accepted = await core.dispatcher.send_command(command)
    if not accepted:
        raise HTTPException(status_code=400, detail=f"Command {command['type']} was rejected")


@router.post("/start", status_code=202)
async def start_sync(body: SyncStart, core: MailCore = Depends(get_core)):
    """Queue a sync pass; progress is reported through sync events."""
    command = {
        "type": "startSync",
        "account_id": body.account_id or core.config.default_account,
        "folder_id": body.folder_id,
        "fetch_bodies": body.fetch_bodies,
        "api_base": core.config.api_base,
        "auth_token": core.config.auth_token,
        "page_size": body.page_size or core.config.sync_page_size,
        "max_messages": body.max_messages,
    }
    await _dispatch(core, command)
    return {"status": "accepted", "folder_id": body.folder_id}


@router.post("/cancel", status_code=202)
async def cancel_sync(body: SyncTarget, core: MailCore = Depends(get_core)):
    """Ask a running sync to stop at its next page boundary."""
    account = body.account_id or core.config.default_account
    await _dispatch(core, {"type": "cancelSync", "account_id": account, "folder_id": body.folder_id})
    return {"status": "cancelling", "folder_id": body.folder_id}


@router.get("/status", response_model=SyncStatus)
async def sync_status(folder_id: str = "INBOX", account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    """Persisted manifest for a folder; also emits an ``idle`` status event."""
    account = account_id or core.config.default_account
    await _dispatch(core, {"type": "syncStatus", "account_id": account, "folder_id": folder_id})

    manifest = await core.store.read_manifest(account, folder_id)
    status = SyncStatus(
        account_id=account,
        folder_id=folder_id,
        running=core.dispatcher.backend.engine.is_running(account, folder_id),
    )
    if manifest:
        status.pages_fetched = manifest.pages_fetched
        status.messages_fetched = manifest.messages_fetched
        status.last_uid = manifest.last_uid
        status.last_sync_at = manifest.last_sync_at
    return status


@router.get("/folders")
async def list_folders(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    """Folders cached by the last sync."""
    account = account_id or core.config.default_account
    folders = await core.store.list_folders(account)
    return [
        {
            "path": f.path,
            "name": f.name,
            "unread_count": f.unread_count,
            "special_use": f.special_use,
        }
        for f in folders
    ]
