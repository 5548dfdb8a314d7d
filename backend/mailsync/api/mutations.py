"""Mutation queue API endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from mailsync.core import MailCore, get_core
from mailsync.services.mutation_queue import MUTATION_TYPES, Mutation

router = APIRouter(prefix="/api/mutations", tags=["mutations"])


class MutationCreate(BaseModel):
    type: str
    payload: dict[str, Any]
    account_id: Optional[str] = None


class MutationList(BaseModel):
    items: list[Mutation]
    pending: int
    failed: int


@router.post("/", response_model=Mutation, status_code=201)
async def enqueue_mutation(body: MutationCreate, core: MailCore = Depends(get_core)):
    """Queue a mailbox change; it is sent now if online, otherwise on the next wake-up."""
    if body.type not in MUTATION_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown mutation type: {body.type}")
    queue = core.account(body.account_id).mutations
    return await queue.enqueue(body.type, body.payload)


@router.get("/", response_model=MutationList)
async def list_mutations(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    items = await core.account(account_id).mutations.list_items()
    return MutationList(
        items=items,
        pending=sum(1 for m in items if m.status in ("pending", "processing")),
        failed=sum(1 for m in items if m.status == "failed"),
    )


@router.post("/process")
async def process_mutations(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    return await core.account(account_id).mutations.process()


@router.post("/retry-failed")
async def retry_failed_mutations(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    reset = await core.account(account_id).mutations.retry_failed()
    return {"reset": reset}


@router.delete("/completed")
async def clear_completed_mutations(account_id: Optional[str] = None, core: MailCore = Depends(get_core)):
    removed = await core.account(account_id).mutations.clear_completed()
    return {"removed": removed}
