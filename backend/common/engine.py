"""Event synchronization: turns parsed webhook events into chat messages.

For each event the engine claims a dedup gate, drops echoes of our own writes,
finds the message already representing the entity and decides whether to
create a message, edit the existing one, fold into a fresh one, or thread a
reply under it. Outbound writes implied by an event are handed to the job
queue, never performed inline.
"""
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from common.actions import ActionRegistry, ReplyAction
from common.cache import CacheStore, Scope
from common.errors import AuthInvalid, ConflictError, NotFound, StoreUnavailable, TransientUpstream
from common.event_index import EventIndex, MessageRecord
from common.models import utc_now

logger = logging.getLogger(__name__)

AFTER_AUTH_KEY = "after_auth_action"


def dedup_key(service: str, action_id: str) -> str:
    return f"{service}:action_{action_id}"


@dataclass
class CanonicalEvent:
    chat_id: str
    service: str
    action_id: str
    action_type: str
    # EventID of the entity the event is about, e.g. ``card_<id>``.
    entity_event_id: Optional[str] = None
    actor: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=utc_now)
    payload: Dict[str, Any] = field(default_factory=dict)
    hook_id: Optional[str] = None
    user_id: Optional[str] = None
    low_value: bool = False

    @property
    def action_event_id(self) -> str:
        return f"action_{self.action_id}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalEvent":
        data = dict(data)
        if isinstance(data.get("occurred_at"), str):
            data["occurred_at"] = datetime.fromisoformat(data["occurred_at"])
        return cls(**data)


@dataclass
class Rendering:
    """What an adapter wants done for one event.

    ``text`` is a new message (threaded under the existing one when there is
    one); ``edit_text`` replaces the existing message's text in place.
    """

    text: Optional[str] = None
    edit_text: Optional[str] = None
    keyboard: Optional[Dict[str, Any]] = None
    edit_keyboard: Optional[Dict[str, Any]] = None
    event_ids: List[str] = field(default_factory=list)
    reply_action: Optional[ReplyAction] = None
    jobs: List[Tuple[str, Tuple[Any, ...]]] = field(default_factory=list)
    thread: bool = True
    silent: bool = False
    anti_flood: bool = False

    @property
    def is_empty(self) -> bool:
        return self.text is None and self.edit_text is None and self.edit_keyboard is None and not self.jobs


class SyncResult(str, Enum):
    CREATED = "created"
    REPLIED = "replied"
    EDITED = "edited"
    FOLDED = "folded"
    DUPLICATE = "duplicate"
    ECHO = "echo"
    SKIPPED = "skipped"
    FLOOD = "flood"
    DEFERRED = "deferred"


class ServiceAdapter(Protocol):
    service: str

    def parse(self, raw: Dict[str, Any], endpoint: Any) -> Optional[CanonicalEvent]:
        ...

    async def render(
        self, event: CanonicalEvent, existing: Optional[MessageRecord], fresh: bool
    ) -> Rendering:
        ...


class UpdateCause(str, Enum):
    LIST_MOVE = "list_move"
    RENAME = "rename"
    ARCHIVE = "archive"
    DUE = "due"
    DESCRIPTION = "description"


# Checked in this order; only the first matching cause is reported.
_CAUSE_FIELDS = (
    (UpdateCause.LIST_MOVE, "idList"),
    (UpdateCause.RENAME, "name"),
    (UpdateCause.ARCHIVE, "closed"),
    (UpdateCause.DUE, "due"),
    (UpdateCause.DESCRIPTION, "desc"),
)


def resolve_update_cause(old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> Optional[UpdateCause]:
    """Pick the single cause explaining an update from the ``old`` sub-object.

    ``old`` holds only the fields that changed, with their previous values.
    """
    if not old:
        return None
    for cause, key in _CAUSE_FIELDS:
        if key in old and old.get(key) != new.get(key):
            return cause
    return None


@dataclass
class IncomingMessage:
    chat_id: str
    message_id: int
    user_id: Optional[str] = None
    username: Optional[str] = None
    text: str = ""
    reply_to_message_id: Optional[int] = None
    document: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReplyContext:
    hub: Any
    message: IncomingMessage
    replied: MessageRecord


class SyncEngine:
    def __init__(
        self,
        cache: CacheStore,
        index: EventIndex,
        jobs,
        transport,
        actions: ActionRegistry,
        credentials=None,
        dedup_ttl: float = 3600,
        recency_window: float = 60,
        anti_flood_ttl: float = 60,
    ):
        self.cache = cache
        self.index = index
        self.jobs = jobs
        self.transport = transport
        self.actions = actions
        self.credentials = credentials
        self.dedup_ttl = dedup_ttl
        self.recency_window = recency_window
        self.anti_flood_ttl = anti_flood_ttl
        # Set once the hub is assembled; handed to reply actions.
        self.hub: Any = None

    # --- ingestion path ---

    async def process(self, event: CanonicalEvent, adapter: ServiceAdapter, defer_on_failure: bool = True) -> SyncResult:
        gate = dedup_key(event.service, event.action_id)
        if not await self.cache.set_if_absent(Scope.CHAT, event.chat_id, gate, True, ttl=self.dedup_ttl):
            logger.warning(
                f"Duplicate {event.service} webhook ignored: chat {event.chat_id}, action {event.action_id}, hook {event.hook_id}"
            )
            return SyncResult.DUPLICATE

        try:
            echo = await self._lookup(event, event.action_event_id)
            if echo is not None:
                logger.info(f"Echo of our own write ignored: chat {event.chat_id}, action {event.action_id}")
                return SyncResult.ECHO
            existing = await self._lookup(event, event.entity_event_id) if event.entity_event_id else None
        except StoreUnavailable:
            await self._release(event)
            raise

        fresh = existing is not None and existing.age_seconds(utc_now()) < self.recency_window

        try:
            rendering = await adapter.render(event, existing, fresh)
        except NotFound as e:
            logger.info(f"Entity for {event.service} action {event.action_id} vanished upstream: {e}")
            return SyncResult.SKIPPED
        except (TransientUpstream, StoreUnavailable) as e:
            return await self._defer(event, e, defer_on_failure)

        try:
            return await self._apply(event, rendering, existing, fresh)
        except TransientUpstream as e:
            return await self._defer(event, e, defer_on_failure)

    async def _lookup(self, event: CanonicalEvent, event_id: str) -> Optional[MessageRecord]:
        try:
            return await self.index.find_message_by_event_id(event.chat_id, event_id)
        except StoreUnavailable as e:
            if event.low_value:
                logger.warning(f"Event index unavailable, treating {event_id} as unseen: {e}")
                return None
            raise

    async def _release(self, event: CanonicalEvent) -> None:
        await self.cache.invalidate(Scope.CHAT, event.chat_id, dedup_key(event.service, event.action_id))

    async def _defer(self, event: CanonicalEvent, error: Exception, defer: bool) -> SyncResult:
        await self._release(event)
        if not defer:
            raise error
        logger.warning(f"Deferring {event.service} action {event.action_id} for chat {event.chat_id}: {error}")
        await self.jobs.enqueue("sync.replay_event", event.to_dict())
        return SyncResult.DEFERRED

    async def _apply(
        self,
        event: CanonicalEvent,
        rendering: Rendering,
        existing: Optional[MessageRecord],
        fresh: bool,
    ) -> SyncResult:
        """Send or edit chat messages, then index them.

        Index writes always follow a chat write here, so an index outage can't
        undo the delivery: the write is handed to the job queue instead and
        the dedup gate stays held.
        """
        if rendering.is_empty:
            return SyncResult.SKIPPED

        chat_id = event.chat_id
        result = SyncResult.SKIPPED

        if existing is not None and (rendering.edit_text is not None or rendering.edit_keyboard is not None):
            text = rendering.edit_text if rendering.edit_text is not None else existing.text
            await self.transport.edit_message(chat_id, existing.message_id, text, rendering.edit_keyboard)
            await self._index_text(existing, text)
            result = SyncResult.EDITED

        if rendering.text and existing is not None and fresh:
            # Amend the message we just created instead of notifying about it.
            if rendering.edit_text is None:
                text = f"{existing.text}\n{rendering.text}" if existing.text else rendering.text
                await self.transport.edit_message(chat_id, existing.message_id, text, rendering.edit_keyboard)
                await self._index_text(existing, text)
            await self._claim(existing, event.action_event_id)
            result = SyncResult.FOLDED
        elif rendering.text:
            if rendering.anti_flood and await self._flooding(chat_id, rendering.text):
                logger.warning(f"Anti-flood dropped repeated message in chat {chat_id}, action {event.action_id}")
                return SyncResult.FLOOD
            reply_to = existing.message_id if existing is not None and rendering.thread else None
            message_id = await self.transport.send_message(
                chat_id,
                rendering.text,
                reply_markup=rendering.keyboard,
                reply_to_message_id=reply_to,
                silent=rendering.silent,
            )
            event_ids = [event.action_event_id, *rendering.event_ids]
            reply_action = rendering.reply_action.to_dict() if rendering.reply_action else None
            try:
                await self.index.save_message(
                    chat_id,
                    message_id,
                    rendering.text,
                    event_ids,
                    reply_action=reply_action,
                    reply_to_message_id=reply_to,
                )
            except StoreUnavailable as e:
                await self._record_later(chat_id, message_id, rendering.text, event_ids, e, reply_action, reply_to)
            result = SyncResult.REPLIED if reply_to is not None else SyncResult.CREATED
        elif result == SyncResult.EDITED:
            await self._claim(existing, event.action_event_id)

        for name, args in rendering.jobs:
            await self.jobs.enqueue(name, *args)
        return result

    async def _index_text(self, message: MessageRecord, text: str) -> None:
        try:
            await self.index.update_message_text(message, text)
        except StoreUnavailable as e:
            await self._record_later(message.chat_id, message.message_id, text, [], e)

    async def _claim(self, message: MessageRecord, event_id: str) -> None:
        try:
            await self.index.record_event(message.chat_id, event_id, message)
        except ConflictError as e:
            logger.warning(f"Event id claim dropped: {e}")
        except StoreUnavailable as e:
            await self._record_later(message.chat_id, message.message_id, None, [event_id], e)

    async def _record_later(
        self,
        chat_id: str,
        message_id: int,
        text: Optional[str],
        event_ids: List[str],
        error: Exception,
        reply_action: Optional[Dict[str, Any]] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> None:
        logger.warning(f"Event index write for message {message_id} in chat {chat_id} failed, queued: {error}")
        await self.jobs.enqueue(
            "sync.record_message", chat_id, message_id, text, list(event_ids), reply_action, reply_to_message_id
        )

    async def _flooding(self, chat_id: str, text: str) -> bool:
        digest = hashlib.sha1(text.encode("utf-8")).hexdigest()
        created = await self.cache.set_if_absent(Scope.CHAT, chat_id, f"flood_{digest}", True, ttl=self.anti_flood_ttl)
        return not created

    # --- reply path ---

    async def handle_reply(self, incoming: IncomingMessage) -> bool:
        """Route a chat reply to the reply action of the message it answers."""
        if incoming.reply_to_message_id is None:
            return False
        replied = await self.index.find_message(incoming.chat_id, incoming.reply_to_message_id)
        if replied is None or not replied.reply_action:
            return False
        action = ReplyAction.from_dict(replied.reply_action)
        await self._dispatch(action, incoming, replied)
        return True

    async def _dispatch(self, action: ReplyAction, incoming: IncomingMessage, replied: MessageRecord) -> None:
        try:
            await self.actions.dispatch(action, ReplyContext(hub=self.hub, message=incoming, replied=replied))
        except AuthInvalid as e:
            await self.request_reauth(incoming, replied, action, e.service)

    async def request_reauth(
        self,
        incoming: IncomingMessage,
        replied: MessageRecord,
        action: ReplyAction,
        service: Optional[str],
    ) -> None:
        """Park the action until the user re-authorizes, then prompt them."""
        if not incoming.user_id:
            logger.warning(f"Can't park {action.name} for an anonymous sender in chat {incoming.chat_id}")
            return
        if self.credentials is not None and service:
            await self.credentials.reset(incoming.user_id, service)
        await self.cache.set(
            Scope.USER,
            incoming.user_id,
            AFTER_AUTH_KEY,
            {"action": action.to_dict(), "message": incoming.to_dict(), "replied_pk": replied.pk},
            ttl=self.dedup_ttl,
        )
        text = f"You need to authorize me to use {service or 'this service'} with replies"
        await self.transport.send_message(
            incoming.chat_id, text, reply_to_message_id=incoming.message_id
        )

    async def resume_after_auth(self, user_id: str) -> bool:
        """Replay the reply action parked by ``request_reauth``, if any."""
        parked = await self.cache.get(Scope.USER, user_id, AFTER_AUTH_KEY)
        if not parked:
            return False
        await self.cache.invalidate(Scope.USER, user_id, AFTER_AUTH_KEY)
        replied = await self.index.get_message(parked["replied_pk"])
        if replied is None:
            logger.warning(f"Parked reply for user {user_id} points at a compacted message")
            return False
        incoming = IncomingMessage(**parked["message"])
        await self._dispatch(ReplyAction.from_dict(parked["action"]), incoming, replied)
        return True
