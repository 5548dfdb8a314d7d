"""Outbox service — durable send queue with retry, backoff and scheduled sends.

Status flow:
    pending   -> sending -> sent | pending (retry) | failed
    scheduled -> sending -> sent | pending (retry) | failed

After ``max_retries`` failures an item is ``failed`` and only an explicit
retry makes it eligible again. Scheduled items already accepted by the server
(``server_id`` set) are never resubmitted; once ``send_at`` passes they are
marked sent locally.
"""

import asyncio
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import quote

from mailsync.config import RetryPolicy, settings
from mailsync.models import OutboxItem
from mailsync.models.outbox import OUTBOX_STATUSES
from mailsync.services.environment import Environment
from mailsync.services.retry import calculate_backoff, now_ms
from mailsync.services.sent_copy import save_sent_copy

logger = logging.getLogger(__name__)

OUTBOX_PREFIX = "outbox_"


def format_rfc3339(ms: int) -> Optional[str]:
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    except (OverflowError, OSError, ValueError):
        return None


def eligible_at(item: OutboxItem) -> int:
    return item.next_retry_at or item.send_at or 0


class OutboxService:
    """Outbox for one account. ``process_outbox`` is single-flight within the process."""

    def __init__(
        self,
        env: Environment,
        account: str,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], int] = now_ms,
        rand: Optional[Callable[[], float]] = None,
        send_delay_ms: int = settings.outbox_send_delay_ms,
    ):
        self.env = env
        self.account = account
        self.policy = policy or settings.outbox_retry_policy
        self._clock = clock
        self._rand = rand
        self._send_delay = send_delay_ms / 1000
        self._running = False
        self._tasks: set[asyncio.Task] = set()

    def kick(self) -> asyncio.Task:
        task = asyncio.create_task(self.process_outbox())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Queue ─────────────────────────────────────────────────────────────

    async def queue_email(
        self,
        email_data: dict,
        send_at: Optional[int] = None,
        server_id: Optional[str] = None,
        skip_process: bool = False,
    ) -> OutboxItem:
        """Store an outgoing email; send now if it is due and we are online."""
        now = self._clock()
        is_scheduled = bool(send_at and send_at > now)
        item_id = f"{OUTBOX_PREFIX}{now}_{secrets.token_hex(3)}"

        await self.env.store.put_outbox({
            "account": self.account,
            "id": item_id,
            "status": "scheduled" if is_scheduled else "pending",
            "retry_count": 0,
            "next_retry_at": send_at if is_scheduled else now,
            "send_at": send_at,
            "server_id": server_id,
            "last_error": None,
            "email_data": email_data,
            "created_at": now,
            "updated_at": now,
        })
        logger.info(f"Queued {item_id} ({'scheduled' if is_scheduled else 'pending'})")

        if not skip_process and not is_scheduled and self.env.online:
            self.kick()

        return await self.env.store.get_outbox(self.account, item_id)

    async def list_outbox(self, status: Optional[str] = None) -> list[OutboxItem]:
        """All items for the account, newest first."""
        items = await self.env.store.list_outbox(self.account, [status] if status else None)
        return sorted(items, key=lambda i: i.created_at or 0, reverse=True)

    async def get_outbox_item(self, item_id: str) -> Optional[OutboxItem]:
        return await self.env.store.get_outbox(self.account, item_id)

    async def get_pending_outbox(self) -> list[OutboxItem]:
        """Items due now, in eligibility-time order."""
        now = self._clock()
        items = await self.env.store.list_outbox(self.account, ["pending", "scheduled"])
        due = [
            item
            for item in items
            if (item.status == "pending" and (item.next_retry_at or 0) <= now)
            or (item.status == "scheduled" and item.send_at and item.send_at <= now)
        ]
        return sorted(due, key=eligible_at)

    async def get_outbox_stats(self) -> dict:
        items = await self.env.store.list_outbox(self.account)
        stats = {"total": len(items), **{status: 0 for status in OUTBOX_STATUSES}}
        for item in items:
            if item.status in stats:
                stats[item.status] += 1
        return stats

    # ── Processing ────────────────────────────────────────────────────────

    async def process_outbox(self) -> dict:
        if not self.env.online:
            return {"processed": 0, "sent": 0, "failed": 0}
        if self._running:
            return {"processed": 0, "sent": 0, "failed": 0, "skipped": True}

        self._running = True
        results = {"processed": 0, "sent": 0, "failed": 0}
        try:
            pending = await self.get_pending_outbox()
            for index, item in enumerate(pending):
                if not self.env.online:
                    break
                if index:
                    await asyncio.sleep(self._send_delay)

                results["processed"] += 1
                try:
                    outcome = await self._send_item(item)
                except Exception as e:
                    # One broken item must not stop the rest of the pass.
                    logger.error(f"Failed to process outbox item {item.id}: {e}")
                    results["failed"] += 1
                    continue

                if outcome.get("claimed") is False:
                    results["processed"] -= 1
                elif outcome["success"]:
                    results["sent"] += 1
                else:
                    results["failed"] += 1
        finally:
            self._running = False

        if results["processed"]:
            logger.info(f"Outbox pass for {self.account}: {results}")
        return results

    async def _send_item(self, item: OutboxItem) -> dict:
        store = self.env.store
        now = self._clock()

        if item.status == "scheduled" and item.server_id and item.send_at and item.send_at <= now:
            await store.update_outbox(self.account, item.id, status="sent", last_error=None)
            await self._notify_sent(item)
            return {"success": True, "skipped": True}

        if not await store.claim_outbox_item(self.account, item.id, [item.status]):
            logger.info(f"Outbox item {item.id} was claimed elsewhere, skipping")
            return {"success": False, "claimed": False}

        payload = dict(item.email_data or {})
        if item.send_at:
            scheduled = format_rfc3339(item.send_at)
            if scheduled:
                payload["send_at"] = scheduled
                payload["date"] = payload.get("date") or scheduled

        try:
            await self.env.remote_call("Emails", payload, {"method": "POST"})
        except Exception as e:
            return await self._record_failure(item, str(e) or "Send failed")

        try:
            await save_sent_copy(store, item, self._clock())
        except Exception as e:
            logger.warning(f"Failed to save sent copy for {item.id}: {e}")

        await store.update_outbox(self.account, item.id, status="sent", last_error=None)
        await self._notify_sent(item)
        return {"success": True}

    async def _record_failure(self, item: OutboxItem, error: str) -> dict:
        retry_count = (item.retry_count or 0) + 1
        if retry_count >= self.policy.max_retries:
            logger.error(f"Outbox item {item.id} failed permanently: {error}")
            await self.env.store.update_outbox(
                self.account, item.id, status="failed", retry_count=retry_count, last_error=error
            )
        else:
            backoff = calculate_backoff(retry_count, self.policy, self._rand)
            logger.warning(f"Outbox item {item.id} failed (retry {retry_count}/{self.policy.max_retries}): {error}")
            await self.env.store.update_outbox(
                self.account,
                item.id,
                status="pending",
                retry_count=retry_count,
                next_retry_at=self._clock() + backoff,
                last_error=error,
            )
        return {"success": False, "error": error}

    async def _notify_sent(self, item: OutboxItem) -> None:
        try:
            await self.env.publish({"type": "outboxSent", "id": item.id, "subject": item.subject})
        except Exception as e:
            logger.warning(f"Failed to dispatch send notification for {item.id}: {e}")

    # ── Retry / cancel / cleanup ──────────────────────────────────────────

    async def _reset(self, item_id: str) -> bool:
        return await self.env.store.update_outbox(
            self.account, item_id, status="pending", retry_count=0, next_retry_at=self._clock(), last_error=None
        )

    async def retry_outbox_item(self, item_id: str) -> dict:
        if await self.get_outbox_item(item_id) is None:
            return {"success": False, "error": "Item not found"}
        await self._reset(item_id)
        if self.env.online:
            return await self.process_outbox()
        return {"success": True, "queued": True}

    async def retry_all_failed(self) -> dict:
        failed = await self.env.store.list_outbox(self.account, ["failed"])
        for item in failed:
            await self._reset(item.id)
        if self.env.online:
            return await self.process_outbox()
        return {"queued": len(failed)}

    async def delete_outbox_item(self, item_id: str) -> bool:
        return await self.env.store.delete_outbox(self.account, item_id)

    async def cancel_scheduled_email(self, item_id: str) -> dict:
        """Cancel on the server first (if it was submitted), then drop the local record."""
        item = await self.get_outbox_item(item_id)
        if item is None:
            return {"success": False, "error": "Item not found"}

        if item.server_id:
            try:
                await self.env.remote_call(
                    "EmailCancel",
                    {},
                    {"method": "DELETE", "path_override": f"/v1/emails/{quote(item.server_id, safe='')}"},
                )
            except Exception as e:
                logger.error(f"Failed to cancel {item_id} on server: {e}")
                return {
                    "success": False,
                    "error": f"Failed to cancel on server: {str(e) or 'Unknown error'}. The scheduled email may still be sent.",
                }

        await self.env.store.delete_outbox(self.account, item_id)
        return {"success": True}

    async def clear_sent_items(self) -> dict:
        sent = await self.env.store.list_outbox(self.account, ["sent"])
        for item in sent:
            await self.env.store.delete_outbox(self.account, item.id)
        return {"deleted": len(sent)}
