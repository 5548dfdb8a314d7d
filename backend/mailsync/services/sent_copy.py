"""Sent copy — local Sent-folder record for mail the outbox delivered."""

import logging

from mailsync.models import OutboxItem
from mailsync.services.normalizer import SEEN_FLAG, SNIPPET_LENGTH, html_to_text
from mailsync.services.store import Store

logger = logging.getLogger(__name__)

SENT_FOLDER = "Sent"


def _addresses(value) -> str:
    if isinstance(value, list):
        return ", ".join(_addresses(v) for v in value)
    if isinstance(value, dict):
        return value.get("address") or value.get("text") or value.get("name") or ""
    return str(value or "")


async def save_sent_copy(store: Store, item: OutboxItem, now: int) -> str:
    """Write a Message + MessageBody copy of a sent outbox item. Returns the local message id."""
    data = item.email_data or {}
    html = data.get("html") or ""
    text = data.get("text") or html_to_text(html)
    message_id = f"sent_{item.id}"

    await store.upsert_messages([{
        "account": item.account,
        "folder": SENT_FOLDER,
        "id": message_id,
        "date_ms": item.send_at or now,
        "from_address": _addresses(data.get("from")) or item.account,
        "subject": data.get("subject") or "(No subject)",
        "snippet": text[:SNIPPET_LENGTH],
        "flags": [SEEN_FLAG],
        "is_unread": False,
        "is_starred": False,
        "has_attachment": bool(data.get("attachments")),
        "thread_id": None,
        "message_id": data.get("messageId") or data.get("message_id"),
        "in_reply_to": data.get("inReplyTo") or data.get("in_reply_to"),
        "references": data.get("references") if isinstance(data.get("references"), list) else None,
        "body_indexed": True,
        "updated_at": now,
    }])
    await store.upsert_bodies([{
        "account": item.account,
        "folder": SENT_FOLDER,
        "id": message_id,
        "body": html or text,
        "text_content": text,
        "attachments": [
            {"name": a.get("filename") or a.get("name"), "filename": a.get("filename"),
             "size": a.get("size"), "content_type": a.get("contentType")}
            for a in data.get("attachments") or []
            if isinstance(a, dict)
        ],
        "updated_at": now,
    }])
    logger.debug(f"Saved sent copy {message_id} for {item.account}")
    return message_id
