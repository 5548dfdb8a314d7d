"""Offline Mail Sync — FastAPI Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailsync import __version__
from mailsync.api import connectivity, mutations, outbox, sync
from mailsync.config import settings
from mailsync.core import MailCore
from mailsync.database import engine
from mailsync.services.remote import HttpRemote
from mailsync.services.store import Store

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("mailsync")


def _log_sync_event(event):
    logger.info(f"Sync event: {dict(event)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("=" * 60)
    logger.info("Offline Mail Sync starting up")
    logger.info(f"API base: {settings.api_base}")
    logger.info(f"Database: {settings.database_url.split('@')[-1]}")
    logger.info(f"Heartbeat: {settings.heartbeat_seconds}s")
    logger.info("=" * 60)

    store = Store(
        engine,
        open_retries=settings.storage_open_retries,
        retry_delay_ms=settings.storage_retry_delay_ms,
    )
    error = await store.ensure_schema()
    if error:
        logger.error(f"Database unavailable ({error.error_name}), recoverable={error.recoverable}")
    else:
        logger.info("Database initialized")

    remote = HttpRemote(settings.api_base, settings.auth_token, timeout=settings.remote_timeout_seconds)
    core = MailCore(store, remote)
    # Long-lived server process: background backend always available.
    await core.start(background_capable=True)
    core.dispatcher.on_message(_log_sync_event)
    core.account(settings.default_account)
    app.state.core = core

    await core.scheduler.wake("startup")
    logger.info(f"Sync backend: {core.dispatcher.mode}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await core.shutdown()
    await remote.close()
    await store.dispose()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Offline Mail Sync",
        description="Durable sync, mutation queue and outbox for an offline-capable mail client",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(sync.router)
    app.include_router(mutations.router)
    app.include_router(outbox.router)
    app.include_router(connectivity.router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        core = getattr(app.state, "core", None)
        return {
            "status": "healthy",
            "sync_backend": core.dispatcher.mode if core else None,
            "online": core.connectivity.online if core else None,
        }

    return app


app = create_app()
