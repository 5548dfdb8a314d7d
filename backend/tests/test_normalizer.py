"""
Test record adapters: upstream shapes -> canonical rows.
"""
from mailsync.services.normalizer import (
    NO_SUBJECT,
    extract_folder_list,
    extract_message_list,
    html_to_text,
    normalize_attachment,
    normalize_body,
    normalize_folder,
    normalize_message,
    parse_date_ms,
)

NOW = 1_700_000_000_000


class TestNormalizeMessage:
    def test_rest_shape(self):
        msg = normalize_message(
            {
                "Uid": 42,
                "Subject": "Hello",
                "Date": "2024-01-15T10:00:00Z",
                "From": {"Display": "Alice", "Email": "alice@example.com"},
                "Plain": "x" * 500,
                "flags": ["\\Seen", "\\Flagged"],
                "References": "<a@x> <b@x>",
            },
            "acct",
            "INBOX",
            NOW,
        )
        assert msg.id == "42"
        assert msg.subject == "Hello"
        assert msg.from_address == "Alice"
        assert msg.date_ms == 1705312800000
        assert len(msg.snippet) == 140
        assert msg.is_unread is False
        assert msg.is_starred is True
        assert msg.references == ["<a@x>", "<b@x>"]
        assert msg.message_id == "42"

    def test_snake_shape(self):
        msg = normalize_message(
            {
                "uid": "9",
                "subject": "Snake",
                "header_date": "Mon, 15 Jan 2024 10:00:00 +0000",
                "from": {"text": "Bob <bob@example.com>"},
                "is_unread": False,
                "folder_path": "Archive",
                "message_id": "<m9@example.com>",
            },
            "acct",
            "INBOX",
            NOW,
        )
        assert msg.id == "9"
        assert msg.folder == "Archive"
        assert msg.from_address == "Bob <bob@example.com>"
        assert msg.date_ms == 1705312800000
        assert msg.is_unread is False
        assert msg.message_id == "<m9@example.com>"

    def test_nodemailer_fallbacks(self):
        msg = normalize_message(
            {"id": "n1", "nodemailer": {"from": {"text": "Carol"}, "text": "plain body"}},
            "acct",
            "INBOX",
            NOW,
        )
        assert msg.from_address == "Carol"
        assert msg.snippet == "plain body"

    def test_defaults_for_missing_fields(self):
        msg = normalize_message({"id": "1"}, "acct", "INBOX", NOW)
        assert msg.subject == NO_SUBJECT
        assert msg.from_address == "Unknown"
        assert msg.date_ms == NOW
        assert msg.snippet == ""
        assert msg.flags == []
        assert msg.is_unread is True
        assert msg.updated_at == NOW

    def test_record_without_id_is_skipped(self):
        assert normalize_message({"Subject": "orphan"}, "acct", "INBOX", NOW) is None

    def test_row_has_every_column(self):
        row = normalize_message({"id": "1"}, "acct", "INBOX", NOW).to_row()
        assert row["account"] == "acct"
        assert row["folder"] == "INBOX"
        assert set(row) >= {"date_ms", "from_address", "subject", "snippet", "flags", "updated_at"}


class TestParseDate:
    def test_epoch_ms_passes_through(self):
        assert parse_date_ms(1705312800000, NOW) == 1705312800000

    def test_naive_iso_is_utc(self):
        assert parse_date_ms("2024-01-15T10:00:00", NOW) == 1705312800000

    def test_garbage_falls_back(self):
        assert parse_date_ms("yesterday-ish", NOW) == NOW
        assert parse_date_ms("", NOW) == NOW
        assert parse_date_ms(None, NOW) == NOW
        assert parse_date_ms(True, NOW) == NOW


class TestBodies:
    def test_html_to_text_strips_markup(self):
        html = "<html><head><style>p{}</style></head><body><p>Hi</p><script>x()</script><p>there</p></body></html>"
        assert html_to_text(html) == "Hi there"

    def test_plain_text_untouched(self):
        assert html_to_text("no markup") == "no markup"

    def test_body_prefers_html_and_keeps_server_text(self):
        message = normalize_message({"id": "1", "snippet": "snip"}, "acct", "INBOX", NOW)
        row = normalize_body(
            {"Result": {"html": "<b>bold</b>", "Plain": "bold", "attachments": [{"filename": "a.pdf", "size": 10}]}},
            message,
            NOW,
        )
        assert row["body"] == "<b>bold</b>"
        assert row["text_content"] == "bold"
        assert row["attachments"][0]["name"] == "a.pdf"
        assert row["attachments"][0]["href"] == ""

    def test_body_falls_back_to_snippet(self):
        message = normalize_message({"id": "1", "snippet": "snip"}, "acct", "INBOX", NOW)
        row = normalize_body(None, message, NOW)
        assert row["body"] == "snip"
        assert row["text_content"] == "snip"

    def test_attachment_aliases(self):
        att = normalize_attachment({"filename": "x.png", "cid": "c1", "mimeType": "image/png", "url": "/a"})
        assert att == {
            "name": "x.png",
            "filename": "x.png",
            "size": None,
            "content_id": "c1",
            "href": "/a",
            "content_type": "image/png",
        }


class TestEnvelopes:
    def test_message_list_envelopes(self):
        assert extract_message_list({"Result": {"List": [1]}}) == [1]
        assert extract_message_list({"Result": [2]}) == [2]
        assert extract_message_list({"List": [3]}) == [3]
        assert extract_message_list([4]) == [4]
        assert extract_message_list({"Result": {}}) == []
        assert extract_message_list(None) == []

    def test_folder_list_envelopes(self):
        assert extract_folder_list({"Result": [{"path": "INBOX"}]}) == [{"path": "INBOX"}]
        assert extract_folder_list({"folders": []}) == []

    def test_folder_row(self):
        row = normalize_folder({"Path": "Archive", "Unread": 4, "SpecialUse": "\\Archive"}, "acct", NOW)
        assert row["path"] == "Archive"
        assert row["name"] == "Archive"
        assert row["unread_count"] == 4
        assert row["special_use"] == "\\Archive"
        assert normalize_folder({}, "acct", NOW) is None
