"""Outbox API endpoints — queue, inspect, retry and cancel outgoing mail."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from mailsync.core import MailCore, get_core

router = APIRouter(prefix="/api/outbox", tags=["outbox"])


class OutboxCreate(BaseModel):
    email: dict[str, Any]
    send_at: Optional[int] = None
    server_id: Optional[str] = None
    account_id: Optional[str] = None


class OutboxSummary(BaseModel):
    id: str
    account: str
    status: str
    retry_count: int
    next_retry_at: Optional[int]
    send_at: Optional[int]
    server_id: Optional[str]
    last_error: Optional[str]
    subject: str
    created_at: int
    updated_at: int

    class Config:
        from_attributes = True


@router.post("/", response_model=OutboxSummary, status_code=201)
async def queue_email(body: OutboxCreate, core: MailCore = Depends(get_core)):
    """Queue an email; sent now when due and online, otherwise later."""
    outbox = core.account(body.account_id).outbox
    item = await outbox.queue_email(body.email, send_at=body.send_at, server_id=body.server_id)
    return OutboxSummary.model_validate(item)


@router.get("/", response_model=list[OutboxSummary])
async def list_outbox(status: Optional[str] = None, account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    items = await core.account(account_id).outbox.list_outbox(status)
    return [OutboxSummary.model_validate(i) for i in items]


@router.get("/stats")
async def outbox_stats(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    return await core.account(account_id).outbox.get_outbox_stats()


@router.post("/process")
async def process_outbox(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    return await core.account(account_id).outbox.process_outbox()


@router.post("/retry-failed")
async def retry_all_failed(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    return await core.account(account_id).outbox.retry_all_failed()


@router.post("/{item_id}/retry")
async def retry_item(item_id: str, account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    result = await core.account(account_id).outbox.retry_outbox_item(item_id)
    if result.get("error") == "Item not found":
        raise HTTPException(status_code=404, detail="Outbox item not found")
    return result


@router.post("/{item_id}/cancel")
async def cancel_scheduled(item_id: str, account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    """Cancel a scheduled send. Fails with 409 if the server could not confirm the cancellation."""
    result = await core.account(account_id).outbox.cancel_scheduled_email(item_id)
    if result["success"]:
        return result
    if result.get("error") == "Item not found":
        raise HTTPException(status_code=404, detail="Outbox item not found")
    raise HTTPException(status_code=409, detail=result["error"])


@router.delete("/sent")
async def clear_sent(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    return await core.account(account_id).outbox.clear_sent_items()


@router.delete("/{item_id}")
async def delete_item(item_id: str, account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    deleted = await core.account(account_id).outbox.delete_outbox_item(item_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Outbox item not found")
    return {"status": "deleted"}
