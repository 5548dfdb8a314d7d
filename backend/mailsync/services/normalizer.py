"""Record adapters — turn the upstream API's many record shapes into canonical rows.

The mail API has grown several shapes for the same record: PascalCase REST
fields (``Uid``, ``Date``, ``From.Display``), snake_case IMAP-ish fields
(``uid``, ``header_date``, ``is_unread``) and a raw ``nodemailer`` parse.
Each shape gets its own adapter that only knows its own field names; the
canonical builders take the first non-empty value across adapters.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

SEEN_FLAG = "\\Seen"
FLAGGED_FLAG = "\\Flagged"
NO_SUBJECT = "(No subject)"
SNIPPET_LENGTH = 140


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _text(value: Any) -> Optional[str]:
    """Strings pass through; address objects collapse to their display text."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("text") or value.get("name") or value.get("address") or None
    return None


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, "", [], {}):
            return value
    return None


# ── Upstream shape adapters ───────────────────────────────────────────────

def _rest_fields(raw: dict) -> dict:
    plain = raw.get("Plain")
    return {
        "id": raw.get("Uid"),
        "date": raw.get("Date"),
        "subject": raw.get("Subject"),
        "from": _first(_get(raw, "From", "Display"), _get(raw, "From", "Email")),
        "snippet": plain[:SNIPPET_LENGTH] if isinstance(plain, str) else None,
        "message_id": _first(raw.get("MessageId"), raw.get("Message-ID")),
        "thread_id": raw.get("ThreadId"),
        "in_reply_to": raw.get("In-Reply-To"),
        "references": raw.get("References"),
        "has_attachment": raw.get("hasAttachments"),
    }


def _snake_fields(raw: dict) -> dict:
    return {
        "id": _first(raw.get("id"), raw.get("uid")),
        "date": _first(raw.get("date"), raw.get("header_date"), raw.get("internal_date"), raw.get("received_at")),
        "subject": raw.get("subject"),
        "from": _first(_text(raw.get("from")), _text(raw.get("sender"))),
        "snippet": _first(raw.get("snippet"), raw.get("preview"), raw.get("textAsHtml"), raw.get("text")),
        "message_id": raw.get("message_id"),
        "thread_id": _first(raw.get("threadId"), raw.get("thread_id")),
        "in_reply_to": _first(raw.get("in_reply_to"), raw.get("inReplyTo")),
        "references": raw.get("references"),
        "has_attachment": raw.get("has_attachment"),
        "folder": _first(raw.get("folder_path"), raw.get("folder"), raw.get("path")),
    }


def _nodemailer_fields(raw: dict) -> dict:
    parsed = raw.get("nodemailer")
    if not isinstance(parsed, dict):
        return {}
    return {
        "from": _text(parsed.get("from")),
        "snippet": _first(parsed.get("textAsHtml"), parsed.get("text")),
    }


MESSAGE_ADAPTERS: list[Callable[[dict], dict]] = [_rest_fields, _snake_fields, _nodemailer_fields]


def _merged_fields(raw: dict) -> dict:
    extracted = [adapter(raw) for adapter in MESSAGE_ADAPTERS]
    keys = {key for fields in extracted for key in fields}
    return {key: _first(*(fields.get(key) for fields in extracted)) for key in keys}


# ── Field parsers ─────────────────────────────────────────────────────────

def parse_date_ms(value: Any, default_ms: int) -> int:
    """Accept epoch ms, ISO 8601 or RFC 2822 dates; anything unparseable becomes ``default_ms``."""
    if value is None or isinstance(value, bool):
        return default_ms
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return default_ms
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                return default_ms
    else:
        return default_ms
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _references(value: Any) -> Optional[list]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str) and value.strip():
        return value.split()
    return None


def html_to_text(html: str) -> str:
    """Visible text of an HTML body, whitespace collapsed."""
    if not html or "<" not in html:
        return html or ""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


# ── Canonical records ─────────────────────────────────────────────────────

@dataclass
class NormalizedMessage:
    """Canonical message row; every field is required and typed."""

    account: str
    folder: str
    id: str
    date_ms: int
    from_address: str
    subject: str
    snippet: str
    updated_at: int
    flags: list[str] = field(default_factory=list)
    is_unread: bool = True
    is_starred: bool = False
    has_attachment: bool = False
    thread_id: Optional[str] = None
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[list] = None
    body_indexed: bool = False

    def to_row(self) -> dict:
        return {
            "account": self.account,
            "folder": self.folder,
            "id": self.id,
            "date_ms": self.date_ms,
            "from_address": self.from_address,
            "subject": self.subject,
            "snippet": self.snippet,
            "flags": list(self.flags),
            "is_unread": self.is_unread,
            "is_starred": self.is_starred,
            "has_attachment": self.has_attachment,
            "thread_id": self.thread_id,
            "message_id": self.message_id,
            "in_reply_to": self.in_reply_to,
            "references": self.references,
            "body_indexed": self.body_indexed,
            "updated_at": self.updated_at,
        }


def normalize_message(raw: dict, account: str, folder: str, now: int) -> Optional[NormalizedMessage]:
    """Build the canonical message for one upstream record, or None if it has no id."""
    fields = _merged_fields(raw)
    if fields.get("id") is None:
        logger.warning(f"Skipping message without id in {account}:{folder}")
        return None

    raw_flags = raw.get("flags")
    flags = [str(f) for f in raw_flags] if isinstance(raw_flags, list) else []
    if isinstance(raw_flags, list):
        is_unread = SEEN_FLAG not in flags
    else:
        is_unread = bool(raw.get("is_unread", True))

    message_id = _first(fields.get("message_id"), fields.get("id"))
    snippet = fields.get("snippet") or ""

    return NormalizedMessage(
        account=account,
        folder=str(fields.get("folder") or folder),
        id=str(fields["id"]),
        date_ms=parse_date_ms(fields.get("date"), now),
        from_address=str(fields.get("from") or "Unknown"),
        subject=str(fields.get("subject") or NO_SUBJECT),
        snippet=snippet if isinstance(snippet, str) else str(snippet),
        flags=flags,
        is_unread=is_unread,
        is_starred=bool(raw.get("is_starred")) or FLAGGED_FLAG in flags,
        has_attachment=bool(fields.get("has_attachment")),
        thread_id=_str_or_none(fields.get("thread_id")),
        message_id=_str_or_none(message_id),
        in_reply_to=_str_or_none(fields.get("in_reply_to")),
        references=_references(fields.get("references")),
        updated_at=now,
    )


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def normalize_folder(raw: dict, account: str, now: int) -> Optional[dict]:
    path = _first(raw.get("path"), raw.get("name"), raw.get("Path"), raw.get("Name"))
    if not path:
        return None
    return {
        "account": account,
        "path": str(path),
        "name": str(_first(raw.get("name"), raw.get("Name"), path)),
        "unread_count": int(_first(raw.get("unread_count"), raw.get("Unread")) or 0),
        "special_use": _first(raw.get("specialUse"), raw.get("SpecialUse")),
        "updated_at": now,
    }


def normalize_attachment(att: dict) -> dict:
    return {
        "name": _first(att.get("name"), att.get("filename")),
        "filename": att.get("filename"),
        "size": att.get("size"),
        "content_id": _first(att.get("cid"), att.get("contentId")),
        "href": att.get("url") or "",
        "content_type": _first(att.get("contentType"), att.get("mimeType"), att.get("type")),
    }


def normalize_body(detail: Any, message: NormalizedMessage, now: int) -> dict:
    """Build a MessageBody row from a message detail response."""
    result = _first(_get(detail, "Result"), detail)
    if not isinstance(result, dict):
        result = {}
    parsed = result.get("nodemailer") if isinstance(result.get("nodemailer"), dict) else {}

    server_text = _first(
        result.get("Plain"),
        result.get("text"),
        result.get("body"),
        result.get("preview"),
        parsed.get("text"),
        parsed.get("preview"),
    ) or ""
    body = _first(
        result.get("html"),
        result.get("Html"),
        result.get("textAsHtml"),
        parsed.get("html"),
        parsed.get("textAsHtml"),
        server_text,
        message.snippet,
    ) or ""
    attachments = _first(parsed.get("attachments"), result.get("attachments")) or []

    return {
        "account": message.account,
        "folder": message.folder,
        "id": message.id,
        "body": body,
        "text_content": server_text or html_to_text(body),
        "attachments": [normalize_attachment(a) for a in attachments if isinstance(a, dict)],
        "updated_at": now,
    }


def extract_message_list(response: Any) -> list:
    """Pull the record list out of any of the page envelopes the API returns."""
    candidates = (
        _get(response, "Result", "List"),
        _get(response, "Result", "list"),
        _get(response, "Result"),
        _get(response, "List"),
        response,
    )
    for candidate in candidates:
        if isinstance(candidate, list):
            return candidate
    return []


def extract_folder_list(response: Any) -> list:
    for candidate in (_get(response, "Result"), _get(response, "folders"), response):
        if isinstance(candidate, list):
            return candidate
    return []
