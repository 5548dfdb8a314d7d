"""Offline mutation queue — durable write-ahead log of mailbox state changes.

Mutations (toggle read, star, move, delete, label) are appended to one
ordered list per account, stored in the ``meta`` table under
``mutation_queue_<account>``. The UI applies the optimistic update itself;
this queue only guarantees the change eventually reaches the server.

Each mutation carries a full payload snapshot (message id, folder, flags at
enqueue time) so it replays correctly even if the UI state moved on.

Completed mutations are pruned after every pass. Mutations that exhaust their
retries stay in the list with status ``failed`` so the UI can show them; they
are skipped by later passes until ``retry_failed()`` resets them.
"""

import asyncio
import logging
import secrets
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel

from mailsync.config import RetryPolicy, settings
from mailsync.errors import ConcurrentModificationError
from mailsync.services.environment import Environment
from mailsync.services.normalizer import FLAGGED_FLAG, SEEN_FLAG
from mailsync.services.remote import message_path
from mailsync.services.retry import calculate_backoff, now_ms

logger = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "mutation_queue_"
MUTATION_TYPES = ("toggleRead", "toggleStar", "move", "delete", "label")
MAX_CAS_ATTEMPTS = 5

MutationType = Literal["toggleRead", "toggleStar", "move", "delete", "label"]
MutationStatus = Literal["pending", "processing", "completed", "failed"]


class Mutation(BaseModel):
    id: str
    type: MutationType
    payload: dict[str, Any]
    status: MutationStatus = "pending"
    retry_count: int = 0
    next_retry_at: Optional[int] = None
    created_at: int
    last_error: Optional[str] = None


def _field(payload: dict, snake: str, camel: str, default: Any = None) -> Any:
    if snake in payload:
        return payload[snake]
    return payload.get(camel, default)


def toggled_flags(flags: list, flag: str, remove: bool) -> list:
    """Flag set to send for a toggle, computed from the enqueue-time snapshot."""
    flags = list(flags or [])
    if remove:
        return [f for f in flags if f != flag]
    if flag not in flags:
        flags.append(flag)
    return flags


def queue_key(account: str) -> str:
    return f"{QUEUE_KEY_PREFIX}{account}"


class MutationQueue:
    """Single-flight processor for one account's mutation list."""

    def __init__(
        self,
        env: Environment,
        account: str,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], int] = now_ms,
        rand: Optional[Callable[[], float]] = None,
    ):
        self.env = env
        self.account = account
        self.policy = policy or settings.mutation_retry_policy
        self._clock = clock
        self._rand = rand
        self._processing = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def key(self) -> str:
        return queue_key(self.account)

    # ── Persistence ───────────────────────────────────────────────────────

    async def _read(self) -> tuple[list[Mutation], Optional[int]]:
        value, version = await self.env.store.read_meta(self.key)
        items = [Mutation.model_validate(m) for m in value] if isinstance(value, list) else []
        return items, version

    async def _write(self, items: list[Mutation], version: Optional[int]) -> int:
        return await self.env.store.write_meta(self.key, [m.model_dump() for m in items], version)

    async def _modify(self, change: Callable[[list[Mutation]], list[Mutation]]) -> list[Mutation]:
        """Read-modify-write the list, re-reading whenever another writer got there first."""
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            items, version = await self._read()
            updated = change(items)
            try:
                await self._write(updated, version)
                return updated
            except ConcurrentModificationError:
                logger.info(f"Mutation queue {self.key} changed underneath us (attempt {attempt}), retrying")
        raise ConcurrentModificationError(self.key)

    # ── Public API ────────────────────────────────────────────────────────

    async def enqueue(self, mutation_type: str, payload: dict) -> Mutation:
        """Append a mutation and process right away if online, else wait for a wake-up."""
        if mutation_type not in MUTATION_TYPES:
            raise ValueError(f"Unknown mutation type: {mutation_type}")

        now = self._clock()
        mutation = Mutation(
            id=f"mut_{now}_{secrets.token_hex(3)}",
            type=mutation_type,
            payload={**payload, "account": self.account},
            created_at=now,
        )
        await self._modify(lambda items: items + [mutation])

        if self.env.online:
            self.kick()
        else:
            logger.info(f"Offline: {mutation.type} {mutation.id} queued until connectivity returns")
        return mutation

    def kick(self) -> asyncio.Task:
        """Start a processing pass in the background."""
        task = asyncio.create_task(self.process())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        """Wait for background passes started by ``kick``."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def list_items(self) -> list[Mutation]:
        items, _ = await self._read()
        return items

    async def pending_count(self) -> int:
        items, _ = await self._read()
        return sum(1 for m in items if m.status in ("pending", "processing"))

    async def failed_count(self) -> int:
        items, _ = await self._read()
        return sum(1 for m in items if m.status == "failed")

    async def clear_completed(self) -> int:
        """Drop everything that is not pending or processing. Returns the number removed."""
        before = len(await self.list_items())
        remaining = await self._modify(
            lambda items: [m for m in items if m.status in ("pending", "processing")]
        )
        return before - len(remaining)

    async def retry_failed(self) -> int:
        """Make terminally failed mutations eligible again."""
        reset = []

        def change(items):
            reset.clear()
            for m in items:
                if m.status == "failed":
                    m.status = "pending"
                    m.retry_count = 0
                    m.next_retry_at = None
                    m.last_error = None
                    reset.append(m.id)
            return items

        await self._modify(change)
        if reset and self.env.online:
            self.kick()
        return len(reset)

    async def process(self) -> dict:
        """Execute eligible mutations in list order, then persist the outcome."""
        result = {"processed": 0, "completed": 0, "failed": 0}
        if self._processing:
            return {**result, "skipped": True}
        if not self.env.online:
            return {**result, "offline": True}

        self._processing = True
        try:
            items, version = await self._read()
            if not items:
                return result

            outcomes: dict[str, Mutation] = {}
            exhausted = 0
            for mutation in items:
                if not self.env.online:
                    break
                if mutation.status == "completed":
                    continue
                if mutation.status == "failed" and mutation.retry_count >= self.policy.max_retries:
                    continue
                if mutation.next_retry_at and self._clock() < mutation.next_retry_at:
                    continue

                mutation.status = "processing"
                result["processed"] += 1
                try:
                    await self._execute(mutation)
                    mutation.status = "completed"
                    mutation.last_error = None
                    result["completed"] += 1
                except Exception as e:
                    mutation.retry_count += 1
                    mutation.last_error = str(e) or "Unknown error"
                    result["failed"] += 1
                    if mutation.retry_count >= self.policy.max_retries:
                        mutation.status = "failed"
                        exhausted += 1
                        logger.error(f"Mutation {mutation.id} ({mutation.type}) failed permanently: {e}")
                    else:
                        mutation.status = "pending"
                        mutation.next_retry_at = self._clock() + calculate_backoff(
                            mutation.retry_count, self.policy, self._rand
                        )
                        logger.warning(
                            f"Mutation {mutation.id} ({mutation.type}) failed, "
                            f"retry {mutation.retry_count}/{self.policy.max_retries}: {e}"
                        )
                outcomes[mutation.id] = mutation

            if outcomes:
                await self._commit(items, version, outcomes)

            await self.env.publish({"type": "mutationQueueProcessed", "account": self.account})
            if exhausted:
                await self.env.publish({"type": "mutationQueueFailed", "account": self.account, "count": exhausted})
            return result
        finally:
            self._processing = False

    async def _commit(self, items: list[Mutation], version: Optional[int], outcomes: dict[str, Mutation]) -> None:
        def prune(current: list[Mutation]) -> list[Mutation]:
            merged = [outcomes.get(m.id, m) for m in current]
            return [m for m in merged if m.status != "completed"]

        try:
            await self._write(prune(items), version)
        except ConcurrentModificationError:
            # Someone appended or edited meanwhile: replay our outcomes onto the fresh list.
            await self._modify(prune)

    # ── Execution ─────────────────────────────────────────────────────────

    async def _execute(self, mutation: Mutation) -> None:
        payload = mutation.payload
        message_id = _field(payload, "message_id", "messageId")
        if message_id is None:
            raise ValueError(f"Mutation {mutation.id} has no message id")
        path = message_path(message_id)
        folder = payload.get("folder")
        flags = payload.get("flags") or []

        if mutation.type == "toggleRead":
            new_flags = toggled_flags(flags, SEEN_FLAG, remove=bool(_field(payload, "is_unread", "isUnread")))
            await self.env.remote_call(
                "MessageUpdate", {"flags": new_flags, "folder": folder}, {"method": "PUT", "path_override": path}
            )
        elif mutation.type == "toggleStar":
            new_flags = toggled_flags(flags, FLAGGED_FLAG, remove=bool(_field(payload, "is_starred", "isStarred")))
            await self.env.remote_call(
                "MessageUpdate", {"flags": new_flags, "folder": folder}, {"method": "PUT", "path_override": path}
            )
        elif mutation.type == "move":
            await self.env.remote_call(
                "MessageUpdate",
                {"folder": _field(payload, "target_folder", "targetFolder")},
                {"method": "PUT", "path_override": path},
            )
        elif mutation.type == "delete":
            if payload.get("permanent"):
                path += "?permanent=1"
            await self.env.remote_call("MessageDelete", {}, {"method": "DELETE", "path_override": path})
        elif mutation.type == "label":
            await self.env.remote_call(
                "MessageUpdate", {"labels": payload.get("labels") or []}, {"method": "PUT", "path_override": path}
            )
        else:
            raise ValueError(f"Unknown mutation type: {mutation.type}")
