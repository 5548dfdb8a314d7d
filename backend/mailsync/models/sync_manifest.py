"""Sync manifest — knows where we left off per (account, folder)."""

from typing import Optional

from sqlalchemy import String, Integer, BigInteger, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.database import Base


class SyncManifest(Base):
    __tablename__ = "sync_manifests"

    account: Mapped[str] = mapped_column(String(320), primary_key=True)
    folder: Mapped[str] = mapped_column(String(512), primary_key=True)
    last_uid: Mapped[Optional[str]] = mapped_column(String(256))
    last_sync_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    pages_fetched: Mapped[int] = mapped_column(Integer, default=0)
    messages_fetched: Mapped[int] = mapped_column(Integer, default=0)
    has_bodies_pass: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[int] = mapped_column(BigInteger)

    def __repr__(self):
        return (
            f"<SyncManifest {self.account}:{self.folder}: "
            f"pages={self.pages_fetched}, messages={self.messages_fetched}>"
        )
