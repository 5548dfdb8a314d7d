"""Durable store — async SQLAlchemy access to folders, messages, manifests, meta and outbox."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from mailsync.database import Base, make_sessionmaker
from mailsync.errors import StorageError, ConcurrentModificationError
from mailsync.models import Folder, Message, MessageBody, SyncManifest, MetaRecord, OutboxItem
from mailsync.services.retry import now_ms

logger = logging.getLogger(__name__)

ErrorListener = Callable[[StorageError], Awaitable[None]]

MAX_BOUND_PARAMS = 900


def classify_storage_error(exc: BaseException) -> StorageError:
    """Map a driver/ORM exception onto a StorageError with a recoverable flag."""
    if isinstance(exc, StorageError):
        return exc
    message = str(getattr(exc, "orig", None) or exc)
    name = type(exc).__name__
    lowered = message.lower()
    if "no such table" in lowered or "does not exist" in lowered:
        name = "NotFoundError"
    elif "database is locked" in lowered or "timeout" in lowered:
        name = "TimeoutError"
    return StorageError(message, error_name=name)


class Store:
    """Atomic upserts and aggregate records on top of one async engine.

    Writes to different keys never block each other; aggregate values kept in
    the ``meta`` table are versioned so read-modify-write cycles can detect a
    concurrent writer.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Callable[[], int] = now_ms,
        open_retries: int = 3,
        retry_delay_ms: int = 500,
    ):
        self._engine = engine
        self._session_factory = make_sessionmaker(engine)
        self._dialect = engine.dialect.name
        self._clock = clock
        self._open_retries = open_retries
        self._retry_delay_ms = retry_delay_ms
        self._error_listeners: list[ErrorListener] = []

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def _report(self, error: StorageError) -> None:
        for listener in self._error_listeners:
            try:
                await listener(error)
            except Exception as e:
                logger.warning(f"Storage error listener failed: {e}")

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            error = classify_storage_error(e)
            logger.error(f"Storage operation failed ({error.error_name}): {error}")
            await self._report(error)
            raise error from e

    # ── Schema ────────────────────────────────────────────────────────────

    async def ensure_schema(self) -> Optional[StorageError]:
        """Create missing tables. Retries recoverable failures; returns the final error, if any."""
        attempt = 0
        while True:
            try:
                async with self._engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                return None
            except SQLAlchemyError as e:
                error = classify_storage_error(e)
                attempt += 1
                if not error.recoverable or attempt > self._open_retries:
                    logger.error(f"Storage open failed after {attempt} attempt(s): {error}")
                    await self._report(error)
                    return error
                delay = self._retry_delay_ms * attempt / 1000
                logger.warning(f"Storage open failed ({error.error_name}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def dispose(self) -> None:
        await self._engine.dispose()

    # ── Upserts ───────────────────────────────────────────────────────────

    def _insert(self, model):
        if self._dialect == "postgresql":
            return pg_insert(model)
        if self._dialect == "sqlite":
            return sqlite_insert(model)
        raise StorageError(f"Unsupported database dialect: {self._dialect}", "NotSupportedError", False)

    async def _upsert(self, model, rows: Iterable[dict]) -> int:
        table = model.__table__
        pk = [c.name for c in table.primary_key.columns]

        # Postgres refuses to touch the same row twice in one statement; last one wins.
        unique = {}
        for row in rows:
            unique[tuple(row[k] for k in pk)] = row
        if not unique:
            return 0

        # Keep each statement under the driver's bound-parameter limit.
        values = list(unique.values())
        chunk = max(1, MAX_BOUND_PARAMS // len(table.columns))
        async with self._session() as db:
            for start in range(0, len(values), chunk):
                stmt = self._insert(model).values(values[start:start + chunk])
                stmt = stmt.on_conflict_do_update(
                    index_elements=pk,
                    set_={c.name: stmt.excluded[c.name] for c in table.columns if c.name not in pk},
                )
                await db.execute(stmt)
            await db.commit()
        return len(unique)

    async def upsert_folders(self, rows: list[dict]) -> int:
        return await self._upsert(Folder, rows)

    async def upsert_messages(self, rows: list[dict]) -> int:
        return await self._upsert(Message, rows)

    async def upsert_bodies(self, rows: list[dict]) -> int:
        return await self._upsert(MessageBody, rows)

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_message(self, account: str, folder: str, message_id: str) -> Optional[Message]:
        async with self._session() as db:
            return await db.get(Message, (account, folder, message_id))

    async def get_body(self, account: str, folder: str, message_id: str) -> Optional[MessageBody]:
        async with self._session() as db:
            return await db.get(MessageBody, (account, folder, message_id))

    async def count_messages(self, account: str, folder: Optional[str] = None) -> int:
        query = select(func.count()).select_from(Message).where(Message.account == account)
        if folder is not None:
            query = query.where(Message.folder == folder)
        async with self._session() as db:
            return (await db.execute(query)).scalar() or 0

    async def list_folders(self, account: str) -> list[Folder]:
        async with self._session() as db:
            result = await db.execute(
                select(Folder).where(Folder.account == account).order_by(Folder.path)
            )
            return list(result.scalars().all())

    # ── Manifest ──────────────────────────────────────────────────────────

    async def read_manifest(self, account: str, folder: str) -> Optional[SyncManifest]:
        async with self._session() as db:
            return await db.get(SyncManifest, (account, folder))

    async def write_manifest(self, manifest: dict) -> None:
        await self._upsert(SyncManifest, [{**manifest, "updated_at": self._clock()}])

    # ── Meta (versioned aggregates) ───────────────────────────────────────

    async def read_meta(self, key: str) -> tuple[Any, Optional[int]]:
        """Return (value, version); version is None when the key does not exist."""
        async with self._session() as db:
            record = await db.get(MetaRecord, key)
            if record is None:
                return None, None
            return record.value, record.version

    async def write_meta(self, key: str, value: Any, expected_version: Optional[int]) -> int:
        """Compare-and-swap write. Raises ConcurrentModificationError if the version moved."""
        now = self._clock()
        async with self._session() as db:
            if expected_version is None:
                db.add(MetaRecord(key=key, value=value, version=1, updated_at=now))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise ConcurrentModificationError(key)
                return 1

            result = await db.execute(
                update(MetaRecord)
                .where(MetaRecord.key == key, MetaRecord.version == expected_version)
                .values(value=value, version=expected_version + 1, updated_at=now)
            )
            await db.commit()
            if result.rowcount == 0:
                raise ConcurrentModificationError(key)
            return expected_version + 1

    async def list_meta_keys(self, prefix: str) -> list[str]:
        async with self._session() as db:
            result = await db.execute(select(MetaRecord.key).where(MetaRecord.key.startswith(prefix, autoescape=True)))
            return list(result.scalars().all())

    # ── Outbox ────────────────────────────────────────────────────────────

    async def put_outbox(self, row: dict) -> None:
        await self._upsert(OutboxItem, [row])

    async def list_outbox_accounts(self, statuses: Iterable[str]) -> list[str]:
        """Accounts with at least one outbox item in one of ``statuses``."""
        async with self._session() as db:
            result = await db.execute(
                select(OutboxItem.account).where(OutboxItem.status.in_(list(statuses))).distinct()
            )
            return list(result.scalars().all())

    async def get_outbox(self, account: str, item_id: str) -> Optional[OutboxItem]:
        async with self._session() as db:
            return await db.get(OutboxItem, (account, item_id))

    async def list_outbox(self, account: str, statuses: Optional[Iterable[str]] = None) -> list[OutboxItem]:
        query = select(OutboxItem).where(OutboxItem.account == account)
        if statuses is not None:
            query = query.where(OutboxItem.status.in_(list(statuses)))
        async with self._session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def update_outbox(self, account: str, item_id: str, **fields) -> bool:
        fields.setdefault("updated_at", self._clock())
        async with self._session() as db:
            result = await db.execute(
                update(OutboxItem)
                .where(OutboxItem.account == account, OutboxItem.id == item_id)
                .values(**fields)
            )
            await db.commit()
            return result.rowcount > 0

    async def claim_outbox_item(self, account: str, item_id: str, from_statuses: Iterable[str]) -> bool:
        """Move an item to ``sending`` only if it is still in one of ``from_statuses``."""
        async with self._session() as db:
            result = await db.execute(
                update(OutboxItem)
                .where(
                    OutboxItem.account == account,
                    OutboxItem.id == item_id,
                    OutboxItem.status.in_(list(from_statuses)),
                )
                .values(status="sending", updated_at=self._clock())
            )
            await db.commit()
            return result.rowcount > 0

    async def delete_outbox(self, account: str, item_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                delete(OutboxItem).where(OutboxItem.account == account, OutboxItem.id == item_id)
            )
            await db.commit()
            return result.rowcount > 0
