"""Stable shared fixtures for tests.

Design goal: avoid async fixture loop injection and keep test boundaries explicit.
"""
import os
from unittest.mock import AsyncMock

import pytest

# Must be set before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APP_AUTH_BEARER_TOKENS"] = "test_token"
os.environ["TELEGRAM_BOT_TOKEN"] = "test_bot_token"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = "test_secret"
os.environ["TRELLO_API_KEY"] = "test_trello_key"
os.environ["PUBLIC_BASE_URL"] = "https://hub.test"

from api.main import app, get_hub


@pytest.fixture
def mock_transport():
    transport = AsyncMock()
    transport.send_message = AsyncMock(return_value=500)
    transport.edit_message = AsyncMock(return_value=None)
    transport.send_document = AsyncMock(return_value={"message_id": 600, "document": {"file_id": "tg_file"}})
    transport.download_file = AsyncMock(return_value=b"file-bytes")
    transport.answer_callback_query = AsyncMock(return_value=None)
    return transport


@pytest.fixture
def mock_hub(mock_transport):
    """A hub whose collaborators are all mocks; tests wire in the parts they need."""
    from types import SimpleNamespace

    from common.webhook import GenericWebhookAdapter

    return SimpleNamespace(
        adapters={"webhook": GenericWebhookAdapter()},
        hooks=AsyncMock(),
        engine=AsyncMock(),
        jobs=AsyncMock(),
        transport=mock_transport,
        credentials=AsyncMock(),
        subscriptions=AsyncMock(),
    )


@pytest.fixture
def app_with_hub(mock_hub):
    app.dependency_overrides[get_hub] = lambda: mock_hub
    yield app
    app.dependency_overrides.clear()
