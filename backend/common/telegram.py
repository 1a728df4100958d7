import json
import logging
import re
import httpx
from html import escape as _html_escape
from typing import Optional, Tuple, Dict, Any, List

from common.errors import HubError, TransientUpstream, raise_for_upstream


def escape_html(text: str) -> str:
    """Escape <, >, & for Telegram HTML parse mode."""
    return _html_escape(str(text), quote=False)

logger = logging.getLogger(__name__)

TELEGRAM_TEXT_MAX_LEN = 4096
TELEGRAM_CAPTION_MAX_LEN = 1024


def verify_telegram_secret(headers: Dict[str, str], secret: Optional[str]) -> bool:
    if not secret:
        return True
    return headers.get("X-Telegram-Bot-Api-Secret-Token") == secret


def parse_update(update_json: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract basic update info from Telegram payload.
    Supports message (text, captioned document, replies) and callback_query updates.
    """
    message = update_json.get("message")
    if message:
        chat = message.get("chat")
        text = message.get("text") or message.get("caption") or ""
        document = message.get("document")
        if chat and (text or document):
            sender = message.get("from") or {}
            reply_to = message.get("reply_to_message") or {}
            return {
                "kind": "message",
                "chat_id": str(chat.get("id")),
                "message_id": message.get("message_id"),
                "user_id": str(sender.get("id")) if sender.get("id") is not None else None,
                "username": sender.get("username") or chat.get("username"),
                "text": text,
                "reply_to_message_id": reply_to.get("message_id"),
                "document": document if isinstance(document, dict) else None,
            }

    callback = update_json.get("callback_query")
    if callback and isinstance(callback, dict):
        cb_message = callback.get("message") or {}
        cb_chat = cb_message.get("chat") or {}
        data = callback.get("data")
        if cb_chat and isinstance(data, str):
            from_user = callback.get("from") or {}
            return {
                "kind": "callback",
                "chat_id": str(cb_chat.get("id")),
                "message_id": cb_message.get("message_id"),
                "user_id": str(from_user.get("id")) if from_user.get("id") is not None else None,
                "username": from_user.get("username") or cb_chat.get("username"),
                "callback_query_id": callback.get("id"),
                "callback_data": data,
                "text": "",
            }

    return None


def extract_command(text: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parses a string for a command like /start arg1 arg2.
    Returns (command, args_string).
    """
    if not text.startswith("/"):
        return None, None

    parts = text.split(maxsplit=1)
    command = parts[0].lower().split("@")[0]  # strip @botname suffix
    args = parts[1] if len(parts) > 1 else None
    return command, args


def split_telegram_text(text: str, max_len: int = TELEGRAM_TEXT_MAX_LEN) -> List[str]:
    """Split long text into Telegram-safe chunks while preferring line boundaries."""
    if len(text) <= max_len:
        return [text]

    lines = text.splitlines(keepends=True)
    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in lines:
        if len(line) > max_len:
            flush()
            remaining = line
            while len(remaining) > max_len:
                split_at = remaining.rfind(" ", 0, max_len)
                if split_at <= 0:
                    split_at = max_len
                chunks.append(remaining[:split_at])
                remaining = remaining[split_at:]
            if remaining:
                current = remaining
            continue

        if len(current) + len(line) > max_len:
            flush()
        current += line

    flush()
    return chunks if chunks else [text[:max_len]]


class TelegramTransport:
    """Bot API client. Every call raises on failure; nothing is swallowed."""

    def __init__(self, token: Optional[str], api_base: str = "https://api.telegram.org", timeout: float = 20):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _url(self, method: str) -> str:
        if not self.token:
            raise HubError("TELEGRAM_BOT_TOKEN not configured")
        return f"{self.api_base}/bot{self.token}/{method}"

    async def _call(self, client: httpx.AsyncClient, method: str, **kwargs) -> httpx.Response:
        try:
            return await client.post(self._url(method), **kwargs)
        except httpx.TransportError as e:
            raise TransientUpstream(f"telegram {method} transport error: {e}") from e

    @staticmethod
    def _result(resp: httpx.Response) -> Any:
        raise_for_upstream(resp, service="telegram")
        body = resp.json()
        if not body.get("ok", False):
            raise HubError(f"telegram rejected call: {body.get('description')}")
        return body.get("result")

    async def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        reply_to_message_id: Optional[int] = None,
        silent: bool = False,
    ) -> int:
        """Send ``text`` and return the id of the first message sent.

        Long texts go out in parts; replies thread to ``reply_to_message_id``.
        """
        chunks = split_telegram_text(text or "", TELEGRAM_TEXT_MAX_LEN)
        total_chunks = len(chunks)
        first_id: Optional[int] = None

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for idx, chunk in enumerate(chunks):
                prefix = f"<i>Part {idx + 1}/{total_chunks}</i>\n\n" if total_chunks > 1 else ""
                payload: Dict[str, Any] = {
                    "chat_id": chat_id,
                    "text": prefix + chunk,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                }
                if silent:
                    payload["disable_notification"] = True
                if reply_to_message_id is not None and idx == 0:
                    payload["reply_to_message_id"] = reply_to_message_id
                    payload["allow_sending_without_reply"] = True
                # Keep inline controls on the final chunk only.
                if isinstance(reply_markup, dict) and idx == total_chunks - 1:
                    payload["reply_markup"] = reply_markup

                resp = await self._call(client, "sendMessage", json=payload)
                if resp.status_code == 400:
                    # Common 400 case is parse issues; retry once with plain text.
                    logger.warning(
                        "Telegram send failed with HTML mode (status=%s, body=%s). Retrying without parse_mode.",
                        resp.status_code,
                        resp.text,
                    )
                    payload.pop("parse_mode", None)
                    payload["text"] = re.sub(r"</?i>", "", prefix) + chunk
                    resp = await self._call(client, "sendMessage", json=payload)

                result = self._result(resp)
                if first_id is None:
                    first_id = int(result["message_id"])
        return first_id

    async def edit_message(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": (text or "")[:TELEGRAM_TEXT_MAX_LEN],
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if isinstance(reply_markup, dict):
            payload["reply_markup"] = reply_markup
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await self._call(client, "editMessageText", json=payload)
        if resp.status_code == 400 and "message is not modified" in resp.text:
            logger.info(f"Message {chat_id}/{message_id} already up to date")
            return
        self._result(resp)

    async def send_document(
        self,
        chat_id: str,
        filename: str,
        content: bytes,
        caption: Optional[str] = None,
        reply_to_message_id: Optional[int] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
        file_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upload ``content`` (or resend a known ``file_id``). Returns the sent message."""
        data: Dict[str, Any] = {"chat_id": chat_id, "parse_mode": "HTML"}
        if caption:
            data["caption"] = caption[:TELEGRAM_CAPTION_MAX_LEN]
        if reply_to_message_id is not None:
            data["reply_to_message_id"] = str(reply_to_message_id)
        if reply_markup:
            data["reply_markup"] = json.dumps(reply_markup)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            if file_id:
                data["document"] = file_id
                resp = await self._call(client, "sendDocument", data=data)
            else:
                resp = await self._call(client, "sendDocument", data=data, files={"document": (filename, content)})
        return self._result(resp)

    async def download_file(self, file_id: str) -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await self._call(client, "getFile", json={"file_id": file_id})
            file_path = self._result(resp)["file_path"]
            url = f"{self.api_base}/file/bot{self.token}/{file_path}"
            try:
                file_resp = await client.get(url)
            except httpx.TransportError as e:
                raise TransientUpstream(f"telegram file download failed: {e}") from e
        raise_for_upstream(file_resp, service="telegram")
        return file_resp.content

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text[:200]
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await self._call(client, "answerCallbackQuery", json=payload)
        self._result(resp)
