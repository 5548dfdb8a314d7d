"""Folder model — cached folder list per account."""

from typing import Optional

from sqlalchemy import String, Integer, BigInteger
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.database import Base


class Folder(Base):
    __tablename__ = "folders"

    account: Mapped[str] = mapped_column(String(320), primary_key=True)
    path: Mapped[str] = mapped_column(String(512), primary_key=True)
    name: Mapped[str] = mapped_column(String(512))
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    special_use: Mapped[Optional[str]] = mapped_column(String(64))
    updated_at: Mapped[int] = mapped_column(BigInteger)

    def __repr__(self):
        return f"<Folder {self.account}:{self.path} unread={self.unread_count}>"
