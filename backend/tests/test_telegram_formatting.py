"""Telegram text helpers, update parsing and generic webhook rendering."""
from common.telegram import escape_html, extract_command, parse_update, split_telegram_text, verify_telegram_secret
from common.webhook import body_digest, render_text


class TestEscapeAndSplit:
    def test_escape_html_covers_required_chars(self):
        assert escape_html("<") == "&lt;"
        assert escape_html(">") == "&gt;"
        assert escape_html("&") == "&amp;"
        assert escape_html("safe text") == "safe text"

    def test_split_telegram_text_preserves_full_content(self):
        text = ("A" * 2000) + "\n" + ("B" * 2000) + "\n" + ("C" * 2000)
        chunks = split_telegram_text(text, max_len=4096)
        assert len(chunks) == 2
        assert "".join(chunks) == text

    def test_split_telegram_text_splits_single_long_line(self):
        text = "x" * 9000
        chunks = split_telegram_text(text, max_len=4096)
        assert len(chunks) == 3
        assert "".join(chunks) == text


class TestParseUpdate:
    def test_reply_message(self):
        update = {
            "update_id": 1,
            "message": {
                "message_id": 900,
                "from": {"id": 42, "username": "ann_tg"},
                "chat": {"id": -100123, "type": "group"},
                "text": "Looks good",
                "reply_to_message": {"message_id": 101},
            },
        }
        data = parse_update(update)
        assert data["kind"] == "message"
        assert data["chat_id"] == "-100123"
        assert data["user_id"] == "42"
        assert data["username"] == "ann_tg"
        assert data["reply_to_message_id"] == 101
        assert data["document"] is None

    def test_captioned_document(self):
        document = {"file_id": "f1", "file_name": "log.txt", "file_size": 10}
        update = {
            "message": {
                "message_id": 5,
                "from": {"id": 42},
                "chat": {"id": 7},
                "caption": "see log",
                "document": document,
            },
        }
        data = parse_update(update)
        assert data["text"] == "see log"
        assert data["document"] == document

    def test_callback_and_unsupported_updates(self):
        callback = {
            "callback_query": {
                "id": "cbq_1",
                "from": {"id": 42},
                "message": {"message_id": 9, "chat": {"id": 7}},
                "data": "noop",
            },
        }
        data = parse_update(callback)
        assert data["kind"] == "callback"
        assert data["callback_query_id"] == "cbq_1"

        assert parse_update({"edited_message": {}}) is None
        assert parse_update({"message": {"chat": {"id": 7}, "sticker": {}}}) is None

    def test_extract_command_strips_bot_suffix(self):
        assert extract_command("/start@hub_bot now") == ("/start", "now")
        assert extract_command("hello") == (None, None)

    def test_verify_secret(self):
        assert verify_telegram_secret({"X-Telegram-Bot-Api-Secret-Token": "s"}, "s")
        assert not verify_telegram_secret({}, "s")
        assert verify_telegram_secret({}, None)


class TestGenericWebhookRendering:
    def test_plain_text_is_escaped(self):
        assert render_text({"text": "a < b & c"}) == "a &lt; b &amp; c"

    def test_channel_is_appended_without_attachments(self):
        assert render_text({"text": "hi", "channel": "#ops"}) == "hi #ops"

    def test_attachments_render_titles_and_bodies(self):
        raw = {
            "text": "Build",
            "attachments": [
                {"title": "CI #42", "title_link": "https://ci.example/42", "text": "failed <3 tests>"},
                {"fallback": "plain"},
            ],
        }
        assert render_text(raw) == (
            'Build\n<a href="https://ci.example/42">CI #42</a>\nfailed &lt;3 tests&gt;\n<b>plain</b>'
        )

    def test_body_digest_ignores_key_order(self):
        assert body_digest({"a": 1, "b": 2}) == body_digest({"b": 2, "a": 1})
        assert body_digest({"a": 1}) != body_digest({"a": 2})
