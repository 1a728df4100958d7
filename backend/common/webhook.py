"""Slack-compatible incoming webhooks: ``{"text": ..., "attachments": [...]}``."""
import hashlib
import json
import logging
from typing import Any, Dict, Optional

from common.engine import CanonicalEvent, Rendering
from common.errors import MalformedPayload
from common.event_index import MessageRecord
from common.telegram import escape_html

logger = logging.getLogger(__name__)

SERVICE = "webhook"


def body_digest(raw: Dict[str, Any]) -> str:
    canonical = json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def render_text(raw: Dict[str, Any]) -> str:
    text = escape_html(raw.get("text") or "")
    attachments = [a for a in raw.get("attachments") or [] if isinstance(a, dict)]
    if not attachments:
        channel = raw.get("channel")
        return f"{text} {escape_html(channel)}" if channel else text

    lines = [text] if text else []
    for attachment in attachments:
        title = escape_html(attachment.get("title") or attachment.get("fallback") or "")
        link = attachment.get("title_link")
        line = f'<a href="{escape_html(link)}">{title or link}</a>' if link else f"<b>{title}</b>" if title else ""
        pretext = attachment.get("pretext")
        if pretext:
            line = f"{line} {escape_html(pretext)}".strip()
        body = attachment.get("text")
        if body:
            line = f"{line}\n{escape_html(body)}" if line else escape_html(body)
        if line:
            lines.append(line)
    return "\n".join(lines)


class GenericWebhookAdapter:
    service = SERVICE

    def parse(self, raw: Dict[str, Any], endpoint) -> Optional[CanonicalEvent]:
        if not isinstance(raw, dict):
            raise MalformedPayload("webhook body is not a JSON object", raw=raw)
        if not raw.get("text") and not raw.get("attachments"):
            raise MalformedPayload("text and attachments not found", raw=raw)
        # Senders rarely provide an id; identical bodies count as one delivery.
        action_id = str(raw.get("id") or body_digest(raw))
        return CanonicalEvent(
            chat_id=endpoint.chat_id,
            service=SERVICE,
            action_id=action_id,
            action_type="message",
            payload={"body": raw},
            hook_id=endpoint.token,
            user_id=endpoint.user_id,
            low_value=True,
        )

    async def render(self, event: CanonicalEvent, existing: Optional[MessageRecord], fresh: bool) -> Rendering:
        text = render_text(event.payload.get("body") or {})
        if not text.strip():
            return Rendering()
        return Rendering(text=text, anti_flood=True)
