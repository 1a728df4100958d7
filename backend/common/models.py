from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey,
    Index, UniqueConstraint, JSON, Enum
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB, "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# --- Enums ---

class CredentialStatus(PyEnum):
    valid = "valid"
    revoked = "revoked"

# --- Models ---

class Message(Base):
    """A chat message this system authored (the Message Record)."""
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    chat_id = Column(String, nullable=False)
    message_id = Column(Integer, nullable=False)
    reply_to_message_id = Column(Integer, nullable=True)
    text = Column(Text, nullable=False, default="")
    event_ids = Column(JSONType, nullable=False, default=list)
    reply_action = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    events = relationship("MessageEvent", back_populates="message", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("chat_id", "message_id", name="uq_messages_chat_msg"),
        Index("idx_messages_created", "created_at"),
    )

class MessageEvent(Base):
    """Event Index row: one EventID claimed by one message within a chat."""
    __tablename__ = "message_events"

    id = Column(String, primary_key=True)
    chat_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    message_pk = Column(String, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    message = relationship("Message", back_populates="events")

    __table_args__ = (
        UniqueConstraint("chat_id", "event_id", name="uq_message_events_chat_event"),
        Index("idx_message_events_message", "message_pk"),
    )

class HookEndpoint(Base):
    """Per-chat ingress URL token for one external service."""
    __tablename__ = "hook_endpoints"

    id = Column(String, primary_key=True)
    token = Column(String, nullable=False, unique=True)
    chat_id = Column(String, nullable=False)
    service = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("chat_id", "service", name="uq_hook_endpoints_chat_service"),
    )

class Subscription(Base):
    """An external model (e.g. a Trello board) delivering webhooks into a chat."""
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    chat_id = Column(String, nullable=False)
    service = Column(String, nullable=False)
    model_id = Column(String, nullable=False)
    model_name = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    external_webhook_id = Column(String, nullable=True)
    credential_fingerprint = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    filters = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("chat_id", "service", "model_id", name="uq_subscriptions_chat_model"),
        Index("idx_subscriptions_user_service", "user_id", "service"),
    )

class ServiceCredential(Base):
    __tablename__ = "service_credentials"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    service = Column(String, nullable=False)
    token = Column(Text, nullable=True)
    status = Column(Enum(CredentialStatus, name="credential_status"), nullable=False, default=CredentialStatus.valid)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "service", name="uq_service_credentials_user_service"),
    )

class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    payload_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_event_log_request", "request_id"),
        Index("idx_event_log_type_created", "event_type", created_at.desc()),
    )
