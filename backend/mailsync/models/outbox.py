"""Outbox model — durable queue of outgoing mail."""

from typing import Optional

from sqlalchemy import String, Text, Integer, BigInteger, JSON
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.database import Base

OUTBOX_STATUSES = ("pending", "scheduled", "sending", "sent", "failed")


class OutboxItem(Base):
    __tablename__ = "outbox"

    account: Mapped[str] = mapped_column(String(320), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    send_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    server_id: Mapped[Optional[str]] = mapped_column(String(256))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    email_data: Mapped[dict] = mapped_column(JSON)

    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)

    @property
    def subject(self) -> str:
        return (self.email_data or {}).get("subject") or "(No subject)"

    def __repr__(self):
        return f"<OutboxItem {self.account}:{self.id} ({self.status})>"
