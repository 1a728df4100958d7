import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from common.actions import ActionRegistry
from common.cache import CacheStore, Scope
from common.engine import CanonicalEvent, ReplyContext, Rendering, UpdateCause, resolve_update_cause
from common.errors import (
    AuthInvalid, HubError, JobPending, MalformedPayload, NotFound, TransientUpstream, raise_for_upstream,
)
from common.event_index import MessageRecord
from common.models import utc_now
from common.subscriptions import NotificationFlag, SubscriptionStore, flag_enabled
from common.telegram import escape_html

logger = logging.getLogger(__name__)

SERVICE = "trello"
# Service-scope cache entries are shared by every chat.
SHARED = "global"

COLOR_EMOJI = {
    "yellow": "🍋",
    "red": "🍎",
    "blue": "🔵",
    "green": "🍏",
    "orange": "🍊",
    "purple": "🍆",
    "black": "⚫️",
    "pink": "🎀",
    "sky": "💎",
    "lime": "🎾",
}

# Action types worth a duplicate rather than a dropped delivery when the index is down.
HIGH_VALUE_ACTIONS = {"createCard", "commentCard"}


class TrelloClient:
    def __init__(self, api_key: str, token: str, base_url: str = "https://api.trello.com/1", timeout: float = 15.0):
        self.api_key = api_key
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = {"key": self.api_key, "token": self.token, **(params or {})}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, params=query, **kwargs)
        except httpx.TransportError as e:
            raise TransientUpstream(f"trello {method} {path} transport error: {e}") from e
        raise_for_upstream(resp, service=SERVICE)
        if not resp.content:
            return {}
        return resp.json()

    async def get_card(self, card_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"cards/{card_id}",
            params={"members": "true", "member_fields": "username,fullName", "list": "true", "board": "true"},
        )

    async def get_me(self) -> Dict[str, Any]:
        return await self._request("GET", "members/me", params={"fields": "username,fullName"})

    async def comment_card(self, card_id: str, text: str) -> Dict[str, Any]:
        """Post a comment. Returns the created action, whose id the webhook will echo."""
        return await self._request("POST", f"cards/{card_id}/actions/comments", params={"text": text})

    async def attach_file(self, card_id: str, filename: str, content: bytes, mime_type: Optional[str] = None) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"cards/{card_id}/attachments",
            data={"name": filename, "mimeType": mime_type or "application/octet-stream"},
            files={"file": (filename, content, mime_type or "application/octet-stream")},
        )

    async def download(self, url: str) -> bytes:
        headers = {"Authorization": f'OAuth oauth_consumer_key="{self.api_key}", oauth_token="{self.token}"'}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await client.get(url, headers=headers)
        except httpx.TransportError as e:
            raise TransientUpstream(f"trello download transport error: {e}") from e
        raise_for_upstream(resp, service=SERVICE)
        return resp.content

    async def create_webhook(self, callback_url: str, model_id: str, description: str = "") -> Dict[str, Any]:
        return await self._request(
            "POST",
            "webhooks",
            params={"callbackURL": callback_url, "idModel": model_id, "description": description},
        )

    async def list_webhooks(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", f"tokens/{self.token}/webhooks")
        if isinstance(payload, list):
            return payload
        return []


def clean_desc(desc: Optional[str]) -> str:
    """Card description up to the first ``---`` separator."""
    if not desc:
        return ""
    return desc.split("---\n")[0].strip("\n\t\r ")


def card_url(card: Dict[str, Any]) -> Optional[str]:
    if card.get("url"):
        return card["url"]
    if card.get("shortUrl"):
        return card["shortUrl"]
    if card.get("shortLink"):
        return f"https://trello.com/c/{card['shortLink']}"
    return None


def format_due(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        due = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return due.strftime("%d %b %Y %H:%M UTC")


def is_trello_hosted(url: Optional[str]) -> bool:
    if not url:
        return False
    host = urlparse(url).netloc.lower()
    return host.endswith("trello.com") or host.endswith("trello-attachments.s3.amazonaws.com")


def _parse_date(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utc_now()


class TrelloAdapter:
    service = SERVICE

    def __init__(
        self,
        cache: CacheStore,
        subscriptions: SubscriptionStore,
        credentials,
        actions: ActionRegistry,
        api_key: Optional[str] = None,
        api_base: str = "https://api.trello.com/1",
        entity_ttl: float = 30 * 24 * 3600,
        nickname_ttl: float = 365 * 24 * 3600,
        profile_ttl: float = 3600,
        max_attachment_bytes: int = 10 * 1024 * 1024,
    ):
        self.cache = cache.bind(SERVICE)
        self.subscriptions = subscriptions
        self.credentials = credentials
        self.actions = actions
        self.api_key = api_key
        self.api_base = api_base
        self.entity_ttl = entity_ttl
        self.nickname_ttl = nickname_ttl
        self.profile_ttl = profile_ttl
        self.max_attachment_bytes = max_attachment_bytes
        self._renderers = {
            "createCard": self._render_create,
            "commentCard": self._render_comment,
            "updateCard": self._render_update,
            "addMemberToCard": self._render_member,
            "removeMemberFromCard": self._render_member,
            "addAttachmentToCard": self._render_attachment,
            "addLabelToCard": self._render_label,
            "updateCheckItemStateOnCard": self._render_check_item,
        }

    def client(self, token: str) -> TrelloClient:
        if not self.api_key:
            raise HubError("TRELLO_API_KEY not configured")
        return TrelloClient(self.api_key, token, base_url=self.api_base)

    async def client_for(self, user_id: Optional[str]) -> TrelloClient:
        token = await self.credentials.get_token(user_id, SERVICE)
        if not token:
            raise AuthInvalid("trello authorization required", service=SERVICE)
        return self.client(token)

    # --- ingestion ---

    def parse(self, raw: Dict[str, Any], endpoint) -> Optional[CanonicalEvent]:
        action = raw.get("action") if isinstance(raw, dict) else None
        if not isinstance(action, dict):
            raise MalformedPayload("trello webhook without an action object", raw=raw)
        action_id = action.get("id")
        action_type = action.get("type")
        if not action_id or not action_type:
            raise MalformedPayload("trello action without id or type", raw=raw)

        data = action.get("data") or {}
        card = data.get("card") or {}
        model = raw.get("model") or {}
        board = data.get("board") or {}
        return CanonicalEvent(
            chat_id=endpoint.chat_id,
            service=SERVICE,
            action_id=action_id,
            action_type=action_type,
            entity_event_id=f"card_{card['id']}" if card.get("id") else None,
            actor=action.get("memberCreator") or {},
            occurred_at=_parse_date(action.get("date")),
            payload={
                "data": data,
                "member": action.get("member"),
                "board_id": model.get("id") or board.get("id"),
            },
            hook_id=endpoint.token,
            user_id=endpoint.user_id,
            low_value=action_type not in HIGH_VALUE_ACTIONS,
        )

    async def render(self, event: CanonicalEvent, existing: Optional[MessageRecord], fresh: bool) -> Rendering:
        board_id = event.payload.get("board_id")
        subscription = await self.subscriptions.get(event.chat_id, SERVICE, board_id) if board_id else None
        if subscription is None or not subscription.enabled:
            logger.info(f"No enabled trello subscription for board {board_id} in chat {event.chat_id}")
            return Rendering()
        renderer = self._renderers.get(event.action_type)
        if renderer is None or event.entity_event_id is None:
            return Rendering()
        return await renderer(event, existing, fresh, subscription)

    async def _render_create(self, event, existing, fresh, subscription) -> Rendering:
        if existing is not None or not flag_enabled(subscription, NotificationFlag.CARD_CREATED):
            return Rendering()
        card = dict(event.payload["data"].get("card") or {})
        card.setdefault("list", event.payload["data"].get("list"))
        card["memberCreator"] = event.actor
        await self.remember_card(card)
        return Rendering(
            text=await self.card_text(card),
            event_ids=[f"card_{card['id']}"],
            reply_action=self.actions.bind("trello.card_replied", card["id"]),
        )

    async def _render_comment(self, event, existing, fresh, subscription) -> Rendering:
        if not flag_enabled(subscription, NotificationFlag.CARD_COMMENTED):
            return Rendering()
        data = event.payload["data"]
        card = data.get("card") or {}
        text = f"💬 {await self.mention(event.actor)}: {escape_html(data.get('text') or '')}"
        extra_ids = []
        if existing is None:
            text = f"{self.card_header(card)}\n{text}"
            extra_ids.append(f"card_{card['id']}")
        return Rendering(
            text=text,
            event_ids=extra_ids,
            reply_action=self.actions.bind("trello.card_replied", card["id"]),
        )

    async def _render_update(self, event, existing, fresh, subscription) -> Rendering:
        data = event.payload["data"]
        old = data.get("old") or {}
        card = await self.card(event)
        await self.remember_card(card)

        edit_text = await self.card_text(card) if existing is not None else None
        actor = await self.mention(event.actor)
        cause = resolve_update_cause(old, card)
        text = None
        silent = False

        if cause == UpdateCause.LIST_MOVE:
            if flag_enabled(subscription, NotificationFlag.CARD_MOVED):
                list_after = (data.get("listAfter") or {}).get("name") or "another list"
                text = f"➡️ {actor} moved the card to <b>{escape_html(list_after)}</b>"
        elif cause == UpdateCause.RENAME:
            text = f"✏️ {actor} renamed the card from <i>{escape_html(old.get('name') or '')}</i>"
            silent = True
        elif cause == UpdateCause.ARCHIVE:
            if flag_enabled(subscription, NotificationFlag.CARD_ARCHIVED):
                text = f"📦 {actor} archived the card" if card.get("closed") else f"📤 {actor} unarchived the card"
        elif cause == UpdateCause.DUE:
            if flag_enabled(subscription, NotificationFlag.CARD_DUE):
                due = format_due(card.get("due"))
                text = f"📅 {actor} set the due date: {due}" if due else f"📅 {actor} removed the due date"
        elif cause == UpdateCause.DESCRIPTION:
            if existing is not None and clean_desc(card.get("desc")):
                text = f"📝 {actor} updated the description"
                silent = True

        if text is None:
            return Rendering(edit_text=edit_text)
        extra_ids = []
        if existing is None:
            text = f"{self.card_header(card)}\n{text}"
            extra_ids.append(f"card_{card['id']}")
        return Rendering(
            text=text,
            edit_text=edit_text,
            event_ids=extra_ids,
            reply_action=self.actions.bind("trello.card_replied", card["id"]),
            silent=silent,
        )

    async def _render_member(self, event, existing, fresh, subscription) -> Rendering:
        member = event.payload.get("member") or event.payload["data"].get("member") or {}
        card = await self.card(event)
        members = [m for m in card.get("members") or [] if m.get("id") != member.get("id")]
        added = event.action_type == "addMemberToCard"
        if added and member:
            members.append(member)
        card["members"] = members
        await self.remember_card(card)

        edit_text = await self.card_text(card) if existing is not None else None
        if not flag_enabled(subscription, NotificationFlag.PERSON_ASSIGNED):
            return Rendering(edit_text=edit_text)

        actor = await self.mention(event.actor)
        if member.get("id") and member.get("id") == (event.actor or {}).get("id"):
            text = f"👤 {actor} {'joined' if added else 'left'} the card"
        else:
            text = f"👤 {actor} {'assigned' if added else 'unassigned'} {await self.mention(member)}"
        if existing is None:
            text = f"{self.card_header(card)}\n{text}"
        return Rendering(
            text=text,
            edit_text=edit_text,
            event_ids=[] if existing is not None else [f"card_{card['id']}"],
            reply_action=self.actions.bind("trello.card_replied", card["id"]),
        )

    async def _render_attachment(self, event, existing, fresh, subscription) -> Rendering:
        if not flag_enabled(subscription, NotificationFlag.ATTACHMENT_ADDED):
            return Rendering()
        data = event.payload["data"]
        card = data.get("card") or {}
        attachment = data.get("attachment") or {}
        if attachment.get("id") and await self.cache.get(Scope.CHAT, event.chat_id, f"own_attachment_{attachment['id']}"):
            return Rendering()
        actor = await self.mention(event.actor)
        url = attachment.get("url")
        name = attachment.get("name") or url or "attachment"

        if is_trello_hosted(url) and event.user_id:
            caption = f"📎 {actor} attached a file"
            reply_to = existing.message_id if existing is not None else None
            return Rendering(jobs=[(
                "trello.download_attachment",
                (event.chat_id, card["id"], reply_to, caption, attachment, event.user_id),
            )])

        if url:
            text = f'📎 {actor} attached <a href="{escape_html(url)}">{escape_html(name)}</a>'
        else:
            text = f"📎 {actor} attached {escape_html(name)}"
        if existing is None:
            text = f"{self.card_header(card)}\n{text}"
        return Rendering(
            text=text,
            event_ids=[] if existing is not None else [f"card_{card['id']}"],
            reply_action=self.actions.bind("trello.card_replied", card["id"]),
        )

    async def _render_label(self, event, existing, fresh, subscription) -> Rendering:
        if not flag_enabled(subscription, NotificationFlag.LABEL_ADDED):
            return Rendering()
        data = event.payload["data"]
        label = data.get("label") or {}
        name = label.get("name") or label.get("color") or "a label"
        text = f"🏷 {await self.mention(event.actor)} added the label <b>{escape_html(name)}</b>"
        return self._card_notice(data.get("card") or {}, existing, text, silent=True)

    async def _render_check_item(self, event, existing, fresh, subscription) -> Rendering:
        data = event.payload["data"]
        item = data.get("checkItem") or {}
        if item.get("state") != "complete" or not flag_enabled(subscription, NotificationFlag.CHECKLIST_ITEM_COMPLETED):
            return Rendering()
        text = f"☑️ {await self.mention(event.actor)} completed <i>{escape_html(item.get('name') or '')}</i>"
        return self._card_notice(data.get("card") or {}, existing, text)

    def _card_notice(self, card: Dict[str, Any], existing, text: str, silent: bool = False) -> Rendering:
        if existing is None:
            text = f"{self.card_header(card)}\n{text}"
        return Rendering(
            text=text,
            event_ids=[] if existing is not None else [f"card_{card['id']}"],
            reply_action=self.actions.bind("trello.card_replied", card["id"]),
            silent=silent,
        )

    # --- entities ---

    async def card(self, event: CanonicalEvent) -> Dict[str, Any]:
        """Cached card merged with the (thin, but newer) card data from the webhook."""
        data = event.payload["data"]
        thin = dict(data.get("card") or {})
        card_id = thin.get("id")

        async def load():
            token = await self.credentials.get_token(event.user_id, SERVICE)
            if not token or not self.api_key:
                return thin
            try:
                return await self.client(token).get_card(card_id)
            except NotFound:
                raise
            except HubError as e:
                logger.warning(f"Can't fetch trello card {card_id}, using webhook data: {e}")
                return thin

        cached = await self.cache.fetch(Scope.SERVICE, SHARED, f"card_{card_id}", self.entity_ttl, load)
        card = {**(cached or {}), **thin}
        if data.get("listAfter"):
            card["list"] = data["listAfter"]
        elif data.get("list"):
            card["list"] = data["list"]
        return card

    async def remember_card(self, card: Dict[str, Any]) -> None:
        if card.get("id"):
            await self.cache.set(Scope.SERVICE, SHARED, f"card_{card['id']}", card, ttl=self.entity_ttl)

    async def mention(self, member: Optional[Dict[str, Any]]) -> str:
        member = member or {}
        username = member.get("username")
        if username:
            try:
                nick = await self.cache.get(Scope.SERVICE, SHARED, f"nick_map_{username}")
            except HubError as e:
                logger.warning(f"Nick map lookup failed for {username}: {e}")
                nick = None
            if nick:
                return f"@{nick}"
        return f"<b>{escape_html(member.get('fullName') or username or 'Someone')}</b>"

    async def learn_nickname(self, user_id: str, telegram_username: Optional[str]) -> None:
        """Remember which chat user a Trello account belongs to, for mentions."""
        if not telegram_username:
            return
        client = await self.client_for(user_id)
        try:
            profile = await self.cache.fetch(Scope.USER, user_id, "me", self.profile_ttl, client.get_me)
        except AuthInvalid:
            raise
        except HubError as e:
            logger.warning(f"Can't load trello profile for user {user_id}: {e}")
            return
        if profile and profile.get("username"):
            await self.cache.set(
                Scope.SERVICE, SHARED, f"nick_map_{profile['username']}", telegram_username, ttl=self.nickname_ttl
            )

    def card_header(self, card: Dict[str, Any]) -> str:
        url = card_url(card)
        name = f"<b>{escape_html(card.get('name') or 'Card')}</b>"
        return f'{name} <a href="{escape_html(url)}">➔</a>' if url else name

    async def card_text(self, card: Dict[str, Any]) -> str:
        text = ""
        if card.get("closed"):
            text += "📦 <b>Card archived</b>\n"
        text += self.card_header(card)
        list_name = (card.get("list") or {}).get("name")
        creator = card.get("memberCreator")
        origin = []
        if list_name:
            origin.append(f"in <i>{escape_html(list_name)}</i>")
        if creator:
            origin.append(f"by {await self.mention(creator)}")
        if origin:
            text += "\n  " + " ".join(origin)

        desc = clean_desc(card.get("desc"))
        if desc:
            text += "\n" + escape_html(desc)

        labels = [label for label in card.get("labels") or [] if label.get("name")]
        if labels:
            text += "\n  " + " ".join(
                f"{COLOR_EMOJI.get(label.get('color'), '🔘')} <b>{escape_html(label['name'])}</b>" for label in labels
            )

        members = card.get("members") or []
        if members:
            mentions = [await self.mention(member) for member in members]
            text += "\n  👤 " + ", ".join(mentions)

        due = format_due(card.get("due"))
        if due:
            text += f"\n  📅 {due}"
        return text


async def card_replied(ctx: ReplyContext, card_id: str) -> None:
    """A user replied to a card message: comment on the card or attach the file."""
    hub = ctx.hub
    message = ctx.message
    adapter: TrelloAdapter = hub.adapters[SERVICE]

    await adapter.client_for(message.user_id)
    await adapter.learn_nickname(message.user_id, message.username)

    if message.document:
        size = message.document.get("file_size") or 0
        if size > adapter.max_attachment_bytes:
            await hub.transport.send_message(
                message.chat_id,
                f"⚠️ Files larger than {adapter.max_attachment_bytes // (1024 * 1024)} MB can't be attached to Trello cards",
                reply_to_message_id=message.message_id,
            )
            return
        await hub.jobs.enqueue(
            "trello.attach_file", message.chat_id, ctx.replied.pk, card_id, message.document, message.user_id
        )
        return

    if not (message.text or "").strip():
        return
    try:
        await hub.jobs.do_sync(
            "trello.comment_card", message.chat_id, ctx.replied.pk, card_id, message.text, message.user_id
        )
    except AuthInvalid:
        raise
    except JobPending:
        # The attempt carries on; its failure hook reports a final failure.
        await hub.transport.send_message(
            message.chat_id,
            "⏳ Trello is slow to answer, your comment is still being posted",
            reply_to_message_id=message.message_id,
        )
    except Exception as e:
        logger.error(f"Comment on card {card_id} failed: {e}")
        await hub.transport.send_message(
            message.chat_id,
            f"⚠️ Your comment was not posted to Trello: {escape_html(str(e))}",
            reply_to_message_id=message.message_id,
        )


def register_actions(registry: ActionRegistry) -> None:
    registry.register("trello.card_replied", card_replied)
