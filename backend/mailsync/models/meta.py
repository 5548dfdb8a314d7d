"""Generic namespaced key/value records (e.g. per-account mutation queues)."""

from typing import Any

from sqlalchemy import String, Integer, BigInteger, JSON
from sqlalchemy.orm import Mapped, mapped_column

from mailsync.database import Base


class MetaRecord(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON)
    # Bumped on every write; used for compare-and-swap updates.
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[int] = mapped_column(BigInteger)

    def __repr__(self):
        return f"<MetaRecord {self.key} v{self.version}>"
