import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from common.actions import ActionRegistry
from common.cache import CacheStore, Scope
from common.engine import (
    CanonicalEvent, IncomingMessage, Rendering, SyncEngine, SyncResult, UpdateCause,
    dedup_key, resolve_update_cause,
)
from common.errors import AuthInvalid, NotFound, StoreUnavailable, TransientUpstream
from common.event_index import EventIndex
from common.outbound import record_message
from common.subscriptions import Endpoint
from common.webhook import GenericWebhookAdapter
from fakes import FakeClock, FakeRedis, Now, sqlite_session_factory


class _CardAdapter:
    """Renders card creations as a card message and everything else as a comment line."""

    service = "trello"

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def render(self, event, existing, fresh):
        self.calls.append((event.action_id, existing, fresh))
        if self.error is not None:
            raise self.error
        if event.action_type == "createCard":
            return Rendering(text="<b>Card 1</b>", event_ids=["card_1"])
        if event.action_type == "updateCard":
            return Rendering(edit_text="<b>Card 1 renamed</b>")
        if event.action_type == "addAttachmentToCard":
            return Rendering(jobs=[("trello.download_attachment", ("chat1", "1"))])
        return Rendering(text=f"💬 {event.payload['text']}")


def _event(action_id, action_type="commentCard", text="hi", low_value=False):
    return CanonicalEvent(
        chat_id="chat1",
        service="trello",
        action_id=action_id,
        action_type=action_type,
        entity_event_id="card_1",
        payload={"text": text},
        low_value=low_value,
    )


def _engine(index, transport, jobs=None, actions=None, credentials=None):
    clock = FakeClock()
    cache = CacheStore(FakeRedis(clock), clock=clock)
    engine = SyncEngine(
        cache, index, jobs or AsyncMock(), transport, actions or ActionRegistry(), credentials=credentials
    )
    engine.hub = "hub"
    return engine


class TestResolveUpdateCause:
    def test_list_move_wins_over_everything(self):
        old = {"desc": "a", "name": "Old", "idList": "l1"}
        new = {"desc": "b", "name": "New", "idList": "l2"}
        assert resolve_update_cause(old, new) == UpdateCause.LIST_MOVE

    def test_rename_before_description(self):
        assert resolve_update_cause({"name": "Old", "desc": "a"}, {"name": "New", "desc": "b"}) == UpdateCause.RENAME

    def test_archive_due_and_description(self):
        assert resolve_update_cause({"closed": False}, {"closed": True}) == UpdateCause.ARCHIVE
        assert resolve_update_cause({"due": None}, {"due": "2026-03-01T10:00:00Z"}) == UpdateCause.DUE
        assert resolve_update_cause({"desc": ""}, {"desc": "now"}) == UpdateCause.DESCRIPTION

    def test_unchanged_or_missing_old_has_no_cause(self):
        assert resolve_update_cause({}, {"name": "x"}) is None
        assert resolve_update_cause(None, {"name": "x"}) is None
        assert resolve_update_cause({"name": "same"}, {"name": "same"}) is None
        assert resolve_update_cause({"pos": 1}, {"pos": 2}) is None


def test_card_events_create_fold_then_thread(mock_transport):
    async def _run():
        now = Now()
        mock_transport.send_message = AsyncMock(side_effect=[101, 102])
        async with sqlite_session_factory() as factory:
            index = EventIndex(factory)
            engine = _engine(index, mock_transport)
            adapter = _CardAdapter()
            with patch("common.engine.utc_now", now), patch("common.event_index.utc_now", now):
                assert await engine.process(_event("A", "createCard"), adapter) == SyncResult.CREATED

                now.advance(5)
                assert await engine.process(_event("B", text="looks good"), adapter) == SyncResult.FOLDED

                now.advance(115)
                assert await engine.process(_event("C", text="ping"), adapter) == SyncResult.REPLIED

            first = await index.find_message_by_event_id("chat1", "card_1")
            assert first.message_id == 101
            assert first.text == "<b>Card 1</b>\n💬 looks good"
            assert (await index.find_message_by_event_id("chat1", "action_B")).pk == first.pk
            mock_transport.edit_message.assert_awaited_once_with("chat1", 101, "<b>Card 1</b>\n💬 looks good", None)

            assert mock_transport.send_message.await_count == 2
            reply = mock_transport.send_message.await_args_list[1]
            assert reply.args == ("chat1", "💬 ping")
            assert reply.kwargs["reply_to_message_id"] == 101
            threaded = await index.find_message_by_event_id("chat1", "action_C")
            assert threaded.message_id == 102
            assert threaded.reply_to_message_id == 101

            # A and B were folded into one message, C got its own.
            assert [c[2] for c in adapter.calls] == [False, True, False]

    asyncio.run(_run())


def test_redelivered_action_is_processed_once(mock_transport):
    async def _run():
        mock_transport.send_message = AsyncMock(side_effect=[101, 102])
        async with sqlite_session_factory() as factory:
            engine = _engine(EventIndex(factory), mock_transport)
            adapter = _CardAdapter()

            assert await engine.process(_event("55", "createCard"), adapter) == SyncResult.CREATED
            assert await engine.process(_event("55", "createCard"), adapter) == SyncResult.DUPLICATE

            assert mock_transport.send_message.await_count == 1
            assert len(adapter.calls) == 1

    asyncio.run(_run())


def test_echo_of_own_write_is_dropped(mock_transport):
    async def _run():
        async with sqlite_session_factory() as factory:
            index = EventIndex(factory)
            await index.save_message("chat1", 77, "card", ["card_1", "action_own"])
            engine = _engine(index, mock_transport)
            adapter = _CardAdapter()

            assert await engine.process(_event("own"), adapter) == SyncResult.ECHO

            mock_transport.send_message.assert_not_awaited()
            assert adapter.calls == []

    asyncio.run(_run())


def test_edit_only_rendering_updates_existing_message(mock_transport):
    async def _run():
        async with sqlite_session_factory() as factory:
            index = EventIndex(factory)
            message = await index.save_message("chat1", 77, "<b>Card 1</b>", ["card_1"])
            engine = _engine(index, mock_transport)

            result = await engine.process(_event("U1", "updateCard"), _CardAdapter())

            assert result == SyncResult.EDITED
            mock_transport.edit_message.assert_awaited_once_with("chat1", 77, "<b>Card 1 renamed</b>", None)
            mock_transport.send_message.assert_not_awaited()
            reloaded = await index.get_message(message.pk)
            assert reloaded.text == "<b>Card 1 renamed</b>"
            assert "action_U1" in reloaded.event_ids

    asyncio.run(_run())


def test_rendering_jobs_are_enqueued_not_run_inline(mock_transport):
    async def _run():
        jobs = AsyncMock()
        async with sqlite_session_factory() as factory:
            engine = _engine(EventIndex(factory), mock_transport, jobs=jobs)

            await engine.process(_event("att", "addAttachmentToCard"), _CardAdapter())

            jobs.enqueue.assert_awaited_once_with("trello.download_attachment", "chat1", "1")
            mock_transport.send_message.assert_not_awaited()

    asyncio.run(_run())


def test_vanished_entity_is_skipped(mock_transport):
    async def _run():
        async with sqlite_session_factory() as factory:
            engine = _engine(EventIndex(factory), mock_transport)
            result = await engine.process(_event("gone"), _CardAdapter(error=NotFound("404")))

            assert result == SyncResult.SKIPPED
            mock_transport.send_message.assert_not_awaited()

    asyncio.run(_run())


def test_index_outage_releases_gate_for_high_value_event(mock_transport):
    async def _run():
        index = AsyncMock()
        index.find_message_by_event_id = AsyncMock(side_effect=StoreUnavailable("db down"))
        engine = _engine(index, mock_transport)
        event = _event("X", "createCard")

        with pytest.raises(StoreUnavailable):
            await engine.process(event, _CardAdapter())

        gate = await engine.cache.get(Scope.CHAT, "chat1", dedup_key("trello", "X"))
        assert gate is None
        mock_transport.send_message.assert_not_awaited()

    asyncio.run(_run())


def test_index_outage_does_not_block_low_value_event(mock_transport):
    async def _run():
        index = AsyncMock()
        index.find_message_by_event_id = AsyncMock(side_effect=StoreUnavailable("db down"))
        engine = _engine(index, mock_transport)

        result = await engine.process(_event("Y", low_value=True), _CardAdapter())

        assert result == SyncResult.CREATED
        mock_transport.send_message.assert_awaited_once()

    asyncio.run(_run())


def test_index_outage_after_send_keeps_gate_and_queues_bookkeeping(mock_transport):
    async def _run():
        jobs = AsyncMock()
        mock_transport.send_message = AsyncMock(return_value=101)
        rendering = Rendering(
            text="<b>Card 1</b>", event_ids=["card_1"], jobs=[("trello.download_attachment", ("chat1", "1"))]
        )
        adapter = AsyncMock(render=AsyncMock(return_value=rendering))
        async with sqlite_session_factory() as factory:
            index = EventIndex(factory)
            engine = _engine(index, mock_transport, jobs=jobs)
            event = _event("A", "createCard")

            with patch.object(index, "save_message", new=AsyncMock(side_effect=StoreUnavailable("db down"))):
                assert await engine.process(event, adapter) == SyncResult.CREATED

            mock_transport.send_message.assert_awaited_once()
            assert [c.args for c in jobs.enqueue.await_args_list] == [
                ("sync.record_message", "chat1", 101, "<b>Card 1</b>", ["action_A", "card_1"], None, None),
                ("trello.download_attachment", "chat1", "1"),
            ]
            # Delivered once; a redelivery must not post it again.
            assert await engine.process(event, adapter) == SyncResult.DUPLICATE
            assert mock_transport.send_message.await_count == 1

            args = jobs.enqueue.await_args_list[0].args[1:]
            await record_message(SimpleNamespace(index=index), *args)
            saved = await index.find_message_by_event_id("chat1", "card_1")
            assert saved.message_id == 101
            assert saved.text == "<b>Card 1</b>"
            assert (await index.find_message_by_event_id("chat1", "action_A")).pk == saved.pk

    asyncio.run(_run())


def test_transport_failure_defers_event_to_replay_job(mock_transport):
    async def _run():
        jobs = AsyncMock()
        mock_transport.send_message = AsyncMock(side_effect=TransientUpstream("telegram 502"))
        async with sqlite_session_factory() as factory:
            engine = _engine(EventIndex(factory), mock_transport, jobs=jobs)
            event = _event("Z", "createCard")

            assert await engine.process(event, _CardAdapter()) == SyncResult.DEFERRED

            jobs.enqueue.assert_awaited_once_with("sync.replay_event", event.to_dict())
            assert await engine.cache.get(Scope.CHAT, "chat1", dedup_key("trello", "Z")) is None

            with pytest.raises(TransientUpstream):
                await engine.process(event, _CardAdapter(), defer_on_failure=False)

    asyncio.run(_run())


def test_anti_flood_drops_identical_text_from_distinct_deliveries(mock_transport):
    async def _run():
        mock_transport.send_message = AsyncMock(side_effect=[101, 102])
        endpoint = Endpoint(token="tok", chat_id="chat1", service="webhook")
        adapter = GenericWebhookAdapter()
        async with sqlite_session_factory() as factory:
            engine = _engine(EventIndex(factory), mock_transport)

            first = adapter.parse({"id": 1, "text": "deploy done"}, endpoint)
            second = adapter.parse({"id": 2, "text": "deploy done"}, endpoint)
            assert await engine.process(first, adapter) == SyncResult.CREATED
            assert await engine.process(second, adapter) == SyncResult.FLOOD

            mock_transport.send_message.assert_awaited_once()

    asyncio.run(_run())


def test_canonical_event_survives_dict_round_trip():
    event = _event("R", "createCard")
    restored = CanonicalEvent.from_dict(event.to_dict())
    assert restored == event


def _reply(text="hello", reply_to=101, user_id="u1"):
    return IncomingMessage(
        chat_id="chat1", message_id=900, user_id=user_id, username="ann", text=text, reply_to_message_id=reply_to
    )


def test_reply_dispatches_bound_action(mock_transport):
    async def _run():
        handler = AsyncMock()
        actions = ActionRegistry()
        actions.register("card_replied", handler)
        async with sqlite_session_factory() as factory:
            index = EventIndex(factory)
            saved = await index.save_message(
                "chat1", 101, "card", ["card_1"], reply_action={"name": "card_replied", "args": ["c1"]}
            )
            await index.save_message("chat1", 102, "plain")
            engine = _engine(index, mock_transport, actions=actions)

            assert await engine.handle_reply(_reply()) is True
            ctx, card_id = handler.await_args.args
            assert card_id == "c1"
            assert ctx.replied.pk == saved.pk
            assert ctx.message.text == "hello"
            assert ctx.hub == "hub"

            assert await engine.handle_reply(_reply(reply_to=None)) is False
            assert await engine.handle_reply(_reply(reply_to=102)) is False
            assert await engine.handle_reply(_reply(reply_to=404)) is False
            assert handler.await_count == 1

    asyncio.run(_run())


def test_auth_failure_parks_reply_until_reauthorized(mock_transport):
    async def _run():
        handler = AsyncMock(side_effect=AuthInvalid("revoked", service="trello"))
        actions = ActionRegistry()
        actions.register("card_replied", handler)
        credentials = AsyncMock()
        async with sqlite_session_factory() as factory:
            index = EventIndex(factory)
            await index.save_message(
                "chat1", 101, "card", ["card_1"], reply_action={"name": "card_replied", "args": ["c1"]}
            )
            engine = _engine(index, mock_transport, actions=actions, credentials=credentials)

            assert await engine.handle_reply(_reply()) is True

            credentials.reset.assert_awaited_once_with("u1", "trello")
            prompt = mock_transport.send_message.await_args
            assert prompt.args == ("chat1", "You need to authorize me to use trello with replies")
            assert prompt.kwargs["reply_to_message_id"] == 900

            handler.side_effect = None
            assert await engine.resume_after_auth("u1") is True
            assert handler.await_count == 2
            ctx, card_id = handler.await_args.args
            assert (ctx.message.text, card_id) == ("hello", "c1")

            assert await engine.resume_after_auth("u1") is False

    asyncio.run(_run())
