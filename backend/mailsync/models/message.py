"""Message models — canonical message headers and lazily fetched bodies."""

from typing import Optional

from sqlalchemy import String, Text, Boolean, BigInteger, JSON
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.database import Base


class Message(Base):
    __tablename__ = "messages"

    account: Mapped[str] = mapped_column(String(320), primary_key=True)
    folder: Mapped[str] = mapped_column(String(512), primary_key=True)
    id: Mapped[str] = mapped_column(String(256), primary_key=True)

    date_ms: Mapped[int] = mapped_column(BigInteger, index=True)
    from_address: Mapped[str] = mapped_column(Text, default="Unknown")
    subject: Mapped[str] = mapped_column(Text)
    snippet: Mapped[str] = mapped_column(Text, default="")

    # Flags
    flags: Mapped[list] = mapped_column(JSON, default=list)
    is_unread: Mapped[bool] = mapped_column(Boolean, default=True)
    is_starred: Mapped[bool] = mapped_column(Boolean, default=False)
    has_attachment: Mapped[bool] = mapped_column(Boolean, default=False)

    # Threading
    thread_id: Mapped[Optional[str]] = mapped_column(String(256))
    message_id: Mapped[Optional[str]] = mapped_column(String(512))
    in_reply_to: Mapped[Optional[str]] = mapped_column(String(512))
    references: Mapped[Optional[list]] = mapped_column(JSON)

    body_indexed: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[int] = mapped_column(BigInteger)

    def __repr__(self):
        return f"<Message {self.account}:{self.folder}:{self.id} {self.subject[:50] if self.subject else ''}>"


class MessageBody(Base):
    __tablename__ = "message_bodies"

    account: Mapped[str] = mapped_column(String(320), primary_key=True)
    folder: Mapped[str] = mapped_column(String(512), primary_key=True)
    id: Mapped[str] = mapped_column(String(256), primary_key=True)

    body: Mapped[str] = mapped_column(Text, default="")
    text_content: Mapped[str] = mapped_column(Text, default="")
    attachments: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[int] = mapped_column(BigInteger)

    def __repr__(self):
        return f"<MessageBody {self.account}:{self.folder}:{self.id}>"
