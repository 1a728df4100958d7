"""Ingress endpoints and per-chat subscriptions to external models."""
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import select

from common.models import HookEndpoint, Subscription, utc_now

logger = logging.getLogger(__name__)


class NotificationFlag(str, Enum):
    CARD_CREATED = "card_created"
    CARD_COMMENTED = "card_commented"
    CARD_MOVED = "card_moved"
    CARD_ARCHIVED = "card_archived"
    CARD_DUE = "card_due"
    PERSON_ASSIGNED = "person_assigned"
    ATTACHMENT_ADDED = "attachment_added"
    LABEL_ADDED = "label_added"
    CHECKLIST_ITEM_COMPLETED = "checklist_item_completed"


DEFAULT_FLAGS: Dict[str, bool] = {
    NotificationFlag.CARD_CREATED.value: True,
    NotificationFlag.CARD_COMMENTED.value: True,
    NotificationFlag.CARD_MOVED.value: True,
    NotificationFlag.CARD_ARCHIVED.value: True,
    NotificationFlag.CARD_DUE.value: True,
    NotificationFlag.PERSON_ASSIGNED.value: True,
    NotificationFlag.ATTACHMENT_ADDED.value: True,
    NotificationFlag.LABEL_ADDED.value: False,
    NotificationFlag.CHECKLIST_ITEM_COMPLETED.value: False,
}


@dataclass
class SubscriptionRecord:
    chat_id: str
    service: str
    model_id: str
    model_name: Optional[str] = None
    user_id: Optional[str] = None
    external_webhook_id: Optional[str] = None
    credential_fingerprint: Optional[str] = None
    enabled: bool = True
    filters: Dict[str, bool] = field(default_factory=dict)


def flag_enabled(subscription: Optional[SubscriptionRecord], flag: NotificationFlag) -> bool:
    if subscription is None:
        return DEFAULT_FLAGS.get(flag.value, False)
    if flag.value in (subscription.filters or {}):
        return bool(subscription.filters[flag.value])
    return DEFAULT_FLAGS.get(flag.value, False)


def _to_record(row: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        chat_id=row.chat_id,
        service=row.service,
        model_id=row.model_id,
        model_name=row.model_name,
        user_id=row.user_id,
        external_webhook_id=row.external_webhook_id,
        credential_fingerprint=row.credential_fingerprint,
        enabled=bool(row.enabled),
        filters=dict(row.filters or {}),
    )


class SubscriptionStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get(self, chat_id: str, service: str, model_id: str) -> Optional[SubscriptionRecord]:
        async with self._session_factory() as db:
            row = await self._row(db, chat_id, service, model_id)
            return _to_record(row) if row is not None else None

    async def list_for_user(self, user_id: str, service: str) -> List[SubscriptionRecord]:
        async with self._session_factory() as db:
            stmt = select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.service == service,
                Subscription.enabled.is_(True),
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def upsert(
        self,
        chat_id: str,
        service: str,
        model_id: str,
        user_id: Optional[str] = None,
        model_name: Optional[str] = None,
        filters: Optional[Dict[str, bool]] = None,
        external_webhook_id: Optional[str] = None,
        credential_fingerprint: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> SubscriptionRecord:
        async with self._session_factory() as db:
            row = await self._row(db, chat_id, service, model_id)
            if row is None:
                row = Subscription(
                    id=str(uuid.uuid4()),
                    chat_id=chat_id,
                    service=service,
                    model_id=model_id,
                    filters=dict(DEFAULT_FLAGS),
                    enabled=True,
                )
                db.add(row)
            if user_id is not None:
                row.user_id = user_id
            if model_name is not None:
                row.model_name = model_name
            if filters is not None:
                row.filters = {**(row.filters or {}), **filters}
            if external_webhook_id is not None:
                row.external_webhook_id = external_webhook_id
            if credential_fingerprint is not None:
                row.credential_fingerprint = credential_fingerprint
            if enabled is not None:
                row.enabled = enabled
            row.updated_at = utc_now()
            await db.commit()
            return _to_record(row)

    @staticmethod
    async def _row(db, chat_id: str, service: str, model_id: str) -> Optional[Subscription]:
        stmt = select(Subscription).where(
            Subscription.chat_id == chat_id,
            Subscription.service == service,
            Subscription.model_id == model_id,
        )
        return (await db.execute(stmt)).scalar_one_or_none()


@dataclass
class Endpoint:
    token: str
    chat_id: str
    service: str
    user_id: Optional[str] = None


class HookEndpointStore:
    """Maps the secret token in an ingress URL to its chat and service."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def resolve(self, service: str, token: str) -> Optional[Endpoint]:
        async with self._session_factory() as db:
            stmt = select(HookEndpoint).where(HookEndpoint.token == token, HookEndpoint.service == service)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return Endpoint(token=row.token, chat_id=row.chat_id, service=row.service, user_id=row.user_id)

    async def ensure(self, chat_id: str, service: str, user_id: Optional[str] = None) -> Endpoint:
        """Return the chat's endpoint for ``service``, creating it on first use."""
        async with self._session_factory() as db:
            stmt = select(HookEndpoint).where(HookEndpoint.chat_id == chat_id, HookEndpoint.service == service)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = HookEndpoint(
                    id=str(uuid.uuid4()),
                    token=secrets.token_urlsafe(18),
                    chat_id=chat_id,
                    service=service,
                    user_id=user_id,
                )
                db.add(row)
                await db.commit()
                logger.info(f"Created {service} hook endpoint for chat {chat_id}")
            elif user_id is not None and row.user_id is None:
                row.user_id = user_id
                await db.commit()
            return Endpoint(token=row.token, chat_id=row.chat_id, service=row.service, user_id=row.user_id)

