"""Connectivity and app-lifecycle signals from the host."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from mailsync.core import MailCore, get_core

router = APIRouter(prefix="/api/connectivity", tags=["connectivity"])


class ConnectivityState(BaseModel):
    online: bool


@router.get("/", response_model=ConnectivityState)
async def get_connectivity(core: MailCore = Depends(get_core)):
    return ConnectivityState(online=core.connectivity.online)


@router.post("/", response_model=ConnectivityState)
async def set_connectivity(body: ConnectivityState, core: MailCore = Depends(get_core)):
    """Report online/offline; going online wakes the queues."""
    await core.connectivity.set_online(body.online)
    return ConnectivityState(online=core.connectivity.online)


@router.post("/resume")
async def app_resumed(core: MailCore = Depends(get_core)):
    """The client came back to the foreground."""
    woke = await core.scheduler.notify_resume()
    return {"woke": woke}
