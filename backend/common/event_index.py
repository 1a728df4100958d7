"""Durable mapping between EventIDs and the chat messages that represent them.

An EventID (``card_<id>``, ``action_<id>``, ...) is claimed by at most one
message per chat. Claims are additive: a message accumulates EventIDs over its
life and never loses them, except through retention compaction.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from common.errors import ConflictError, StoreUnavailable
from common.models import Message, MessageEvent, utc_now

logger = logging.getLogger(__name__)


@dataclass
class MessageRecord:
    pk: str
    chat_id: str
    message_id: int
    text: str = ""
    event_ids: List[str] = field(default_factory=list)
    reply_action: Optional[Dict[str, Any]] = None
    reply_to_message_id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: Message) -> MessageRecord:
    return MessageRecord(
        pk=row.id,
        chat_id=row.chat_id,
        message_id=row.message_id,
        text=row.text or "",
        event_ids=list(row.event_ids or []),
        reply_action=row.reply_action,
        reply_to_message_id=row.reply_to_message_id,
        created_at=_aware(row.created_at),
    )


class EventIndex:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as db:
                yield db
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailable(f"event index unavailable: {e}") from e

    async def save_message(
        self,
        chat_id: str,
        message_id: int,
        text: str = "",
        event_ids: Iterable[str] = (),
        reply_action: Optional[Dict[str, Any]] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> MessageRecord:
        """Persist a freshly sent message and claim its EventIDs.

        EventIDs already owned by another message are logged and dropped; the
        message itself is always stored so replies to it can be routed.
        """
        async with self._session() as db:
            row = Message(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                message_id=message_id,
                reply_to_message_id=reply_to_message_id,
                text=text or "",
                event_ids=[],
                reply_action=reply_action,
                created_at=utc_now(),
            )
            db.add(row)
            await db.commit()
            record = _to_record(row)

        claimed = []
        for event_id in _unique(event_ids):
            try:
                await self.record_event(chat_id, event_id, record)
                claimed.append(event_id)
            except ConflictError as e:
                logger.warning(f"Dropping event id claim on save: {e}")
        record.event_ids = claimed
        return record

    async def record_event(self, chat_id: str, event_id: str, message: MessageRecord) -> None:
        """Associate ``event_id`` with ``message``.

        Idempotent for the same message; raises ConflictError when another
        message already owns the EventID, leaving that association untouched.
        """
        async with self._session() as db:
            owner = await self._owner(db, chat_id, event_id)
            if owner is not None:
                if owner != message.pk:
                    raise ConflictError(chat_id, event_id, owner)
                return

            db.add(MessageEvent(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                event_id=event_id,
                message_pk=message.pk,
            ))
            row = await db.get(Message, message.pk)
            if row is not None and event_id not in (row.event_ids or []):
                row.event_ids = [*(row.event_ids or []), event_id]
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race against a concurrent claim.
                await db.rollback()
                owner = await self._owner(db, chat_id, event_id)
                if owner != message.pk:
                    raise ConflictError(chat_id, event_id, owner)
                return

        if event_id not in message.event_ids:
            message.event_ids.append(event_id)

    async def append_event_ids(self, message: MessageRecord, *event_ids: str) -> MessageRecord:
        for event_id in _unique(event_ids):
            await self.record_event(message.chat_id, event_id, message)
        return message

    async def find_message_by_event_id(self, chat_id: str, event_id: str) -> Optional[MessageRecord]:
        async with self._session() as db:
            stmt = (
                select(Message)
                .join(MessageEvent, MessageEvent.message_pk == Message.id)
                .where(MessageEvent.chat_id == chat_id, MessageEvent.event_id == event_id)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def find_message(self, chat_id: str, message_id: int) -> Optional[MessageRecord]:
        async with self._session() as db:
            stmt = select(Message).where(Message.chat_id == chat_id, Message.message_id == message_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def update_message(
        self,
        message: MessageRecord,
        text: Optional[str] = None,
        reply_action: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        async with self._session() as db:
            row = await db.get(Message, message.pk)
            if row is None:
                logger.warning(f"Message {message.pk} vanished before update")
                return message
            if text is not None:
                row.text = text
                message.text = text
            if reply_action is not None:
                row.reply_action = reply_action
                message.reply_action = reply_action
            await db.commit()
        return message

    async def update_message_text(self, message: MessageRecord, text: str) -> MessageRecord:
        return await self.update_message(message, text=text)

    async def get_message(self, pk: str) -> Optional[MessageRecord]:
        async with self._session() as db:
            row = await db.get(Message, pk)
            return _to_record(row) if row is not None else None

    async def compact(self, older_than: datetime) -> int:
        async with self._session() as db:
            old_ids = (await db.execute(select(Message.id).where(Message.created_at < older_than))).scalars().all()
            if not old_ids:
                return 0
            await db.execute(delete(MessageEvent).where(MessageEvent.message_pk.in_(old_ids)))
            result = await db.execute(delete(Message).where(Message.id.in_(old_ids)))
            await db.commit()
            return result.rowcount or 0

    @staticmethod
    async def _owner(db, chat_id: str, event_id: str) -> Optional[str]:
        stmt = select(MessageEvent.message_pk).where(
            MessageEvent.chat_id == chat_id,
            MessageEvent.event_id == event_id,
        )
        return (await db.execute(stmt)).scalar_one_or_none()


def _unique(values: Iterable[str]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen
