"""Launcher script for init-manager compatibility.
Starts uvicorn programmatically instead of via CLI.
"""
import uvicorn

from mailsync.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "mailsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level="info",
    )
