"""initial_sync_schema

Revision ID: 7a4c2e91b3d0
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '7a4c2e91b3d0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    credential_status_enum = postgresql.ENUM('valid', 'revoked', name='credential_status')

    # messages
    op.create_table(
        'messages',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('chat_id', sa.String(), nullable=False),
        sa.Column('message_id', sa.Integer(), nullable=False),
        sa.Column('reply_to_message_id', sa.Integer(), nullable=True),
        sa.Column('text', sa.Text(), nullable=False, server_default=''),
        sa.Column('event_ids', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('reply_action', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('chat_id', 'message_id', name='uq_messages_chat_msg')
    )
    op.create_index('idx_messages_created', 'messages', ['created_at'])

    # message_events
    op.create_table(
        'message_events',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('chat_id', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('message_pk', sa.String(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('chat_id', 'event_id', name='uq_message_events_chat_event')
    )
    op.create_index('idx_message_events_message', 'message_events', ['message_pk'])

    # hook_endpoints
    op.create_table(
        'hook_endpoints',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('token', sa.String(), nullable=False, unique=True),
        sa.Column('chat_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('chat_id', 'service', name='uq_hook_endpoints_chat_service')
    )

    # subscriptions
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('chat_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('model_id', sa.String(), nullable=False),
        sa.Column('model_name', sa.String(), nullable=True),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('external_webhook_id', sa.String(), nullable=True),
        sa.Column('credential_fingerprint', sa.String(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('filters', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('chat_id', 'service', 'model_id', name='uq_subscriptions_chat_model')
    )
    op.create_index('idx_subscriptions_user_service', 'subscriptions', ['user_id', 'service'])

    # service_credentials
    op.create_table(
        'service_credentials',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('service', sa.String(), nullable=False),
        sa.Column('token', sa.Text(), nullable=True),
        sa.Column('status', credential_status_enum, nullable=False, server_default='valid'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'service', name='uq_service_credentials_user_service')
    )

    # event_log
    op.create_table(
        'event_log',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('request_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=True),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('payload_json', postgresql.JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)
    )
    op.create_index('idx_event_log_request', 'event_log', ['request_id'])
    op.create_index('idx_event_log_type_created', 'event_log', ['event_type', sa.text('created_at DESC')])


def downgrade() -> None:
    op.drop_table('event_log')
    op.drop_table('service_credentials')
    op.drop_table('subscriptions')
    op.drop_table('hook_endpoints')
    op.drop_table('message_events')
    op.drop_table('messages')

    op.execute("DROP TYPE credential_status")
