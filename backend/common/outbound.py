"""Job handlers that write to external services.

Every handler takes the hub context first, then the job's positional args.
Handlers that create something upstream record the created id on the chat
message the user replied to, so the webhook echo of our own write is dropped.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from common.cache import Scope
from common.config import Settings
from common.credentials import fingerprint
from common.engine import CanonicalEvent, dedup_key
from common.errors import AuthInvalid, ConflictError, HubError
from common.jobs import FibonacciBackoff, JobQueue, JobType, NoRetry
from common.models import utc_now
from common.telegram import escape_html
from common.trello import SERVICE as TRELLO, SHARED

logger = logging.getLogger(__name__)

TRELLO_POOL = "trello"
SERIAL_POOL = "serial"
POOL_SIZES = {TRELLO_POOL: 10, SERIAL_POOL: 1}


async def _record_own_action(hub, chat_id: str, message_pk: str, event_id: str, gate: Optional[str] = None) -> None:
    if gate:
        await hub.cache.set_if_absent(Scope.CHAT, chat_id, gate, True, ttl=hub.engine.dedup_ttl)
    message = await hub.index.get_message(message_pk)
    if message is None:
        logger.warning(f"Message {message_pk} is gone, can't record {event_id}")
        return
    try:
        await hub.index.record_event(chat_id, event_id, message)
    except ConflictError as e:
        logger.warning(f"Own action already claimed: {e}")


async def _trello_client(hub, user_id: str):
    return await hub.adapters[TRELLO].client_for(user_id)


async def _revoke_on_auth_error(hub, user_id: str, error: AuthInvalid) -> None:
    logger.warning(f"Trello rejected credential of user {user_id}: {error}")
    await hub.credentials.reset(user_id, TRELLO)


async def comment_card(hub, chat_id: str, message_pk: str, card_id: str, text: str, user_id: str) -> Dict[str, Any]:
    client = await _trello_client(hub, user_id)
    try:
        action = await client.comment_card(card_id, text)
    except AuthInvalid as e:
        await _revoke_on_auth_error(hub, user_id, e)
        raise
    action_id = action.get("id")
    if action_id:
        await _record_own_action(hub, chat_id, message_pk, f"action_{action_id}", gate=dedup_key(TRELLO, action_id))
    logger.info(f"Commented on trello card {card_id} for chat {chat_id}")
    return {"action_id": action_id}


async def attach_file(
    hub, chat_id: str, message_pk: str, card_id: str, document: Dict[str, Any], user_id: str
) -> Dict[str, Any]:
    client = await _trello_client(hub, user_id)
    content = await hub.transport.download_file(document["file_id"])
    filename = document.get("file_name") or document["file_id"]
    try:
        attachment = await client.attach_file(card_id, filename, content, document.get("mime_type"))
    except AuthInvalid as e:
        await _revoke_on_auth_error(hub, user_id, e)
        raise
    attachment_id = attachment.get("id")
    if attachment_id:
        # The webhook echo carries a new action id; the adapter matches on the attachment id.
        await hub.adapters[TRELLO].cache.set(
            Scope.CHAT, chat_id, f"own_attachment_{attachment_id}", True, ttl=hub.engine.dedup_ttl
        )
        await _record_own_action(hub, chat_id, message_pk, f"attachment_{attachment_id}")
    return {"attachment_id": attachment_id}


async def download_attachment(
    hub,
    chat_id: str,
    card_id: str,
    reply_to_message_id: Optional[int],
    caption: str,
    attachment: Dict[str, Any],
    user_id: str,
) -> Dict[str, Any]:
    """Mirror a file attached on Trello into the chat as a document."""
    adapter = hub.adapters[TRELLO]
    attachment_id = attachment.get("id")
    event_id = f"attachment_{attachment_id}"
    if await hub.index.find_message_by_event_id(chat_id, event_id) is not None:
        logger.info(f"Attachment {attachment_id} already posted to chat {chat_id}")
        return {"skipped": True}

    name = attachment.get("name") or "attachment"
    size = attachment.get("bytes") or 0
    if size > adapter.max_attachment_bytes:
        message_id = await hub.transport.send_message(
            chat_id,
            f'{caption}: <a href="{escape_html(attachment.get("url") or "")}">{escape_html(name)}</a>',
            reply_to_message_id=reply_to_message_id,
        )
    else:
        file_id = await adapter.cache.get(Scope.SERVICE, SHARED, f"file_{attachment_id}")
        if file_id:
            sent = await hub.transport.send_document(
                chat_id, name, b"", caption=caption, reply_to_message_id=reply_to_message_id, file_id=file_id
            )
        else:
            client = await _trello_client(hub, user_id)
            content = await client.download(attachment["url"])
            sent = await hub.transport.send_document(
                chat_id, name, content, caption=caption, reply_to_message_id=reply_to_message_id
            )
            file_id = (sent.get("document") or {}).get("file_id")
            if file_id:
                await adapter.cache.set(Scope.SERVICE, SHARED, f"file_{attachment_id}", file_id, ttl=adapter.entity_ttl)
        message_id = sent["message_id"]

    await hub.index.save_message(
        chat_id,
        message_id,
        caption,
        [event_id],
        reply_action=hub.actions.bind("trello.card_replied", card_id).to_dict(),
        reply_to_message_id=reply_to_message_id,
    )
    return {"message_id": message_id}


async def subscribe_board(
    hub, chat_id: str, board_id: str, user_id: str, board_name: Optional[str] = None
) -> Dict[str, Any]:
    client = await _trello_client(hub, user_id)
    endpoint = await hub.hooks.ensure(chat_id, TRELLO, user_id)
    callback_url = hub.settings.hook_url(TRELLO, endpoint.token)
    try:
        webhook = await client.create_webhook(callback_url, board_id, description=f"chat {chat_id}")
    except AuthInvalid as e:
        await _revoke_on_auth_error(hub, user_id, e)
        raise
    except HubError as e:
        if "already exists" not in str(e):
            raise
        existing = [
            w for w in await client.list_webhooks()
            if w.get("idModel") == board_id and w.get("callbackURL") == callback_url
        ]
        if not existing:
            raise
        webhook = existing[0]

    await hub.subscriptions.upsert(
        chat_id,
        TRELLO,
        board_id,
        user_id=user_id,
        model_name=board_name,
        external_webhook_id=webhook.get("id"),
        credential_fingerprint=fingerprint(client.token),
        enabled=True,
    )
    logger.info(f"Subscribed chat {chat_id} to trello board {board_id}")
    return {"webhook_id": webhook.get("id")}


async def resubscribe_all_boards(hub, user_id: str) -> Dict[str, Any]:
    """Re-create webhooks for the user's boards after their credential changed."""
    token = await hub.credentials.get_token(user_id, TRELLO)
    if not token:
        raise AuthInvalid("trello authorization required", service=TRELLO)
    current = fingerprint(token)
    resubscribed: List[str] = []
    for subscription in await hub.subscriptions.list_for_user(user_id, TRELLO):
        if subscription.external_webhook_id and subscription.credential_fingerprint == current:
            continue
        await subscribe_board(hub, subscription.chat_id, subscription.model_id, user_id, subscription.model_name)
        resubscribed.append(subscription.model_id)
    return {"resubscribed": resubscribed}


async def replay_event(hub, event_data: Dict[str, Any]) -> str:
    """Run a deferred webhook event through the engine again."""
    event = CanonicalEvent.from_dict(event_data)
    adapter = hub.adapters.get(event.service)
    if adapter is None:
        raise HubError(f"no adapter for service {event.service}")
    result = await hub.engine.process(event, adapter, defer_on_failure=False)
    return result.value


async def record_message(
    hub,
    chat_id: str,
    message_id: int,
    text: Optional[str],
    event_ids: List[str],
    reply_action: Optional[Dict[str, Any]] = None,
    reply_to_message_id: Optional[int] = None,
) -> str:
    """Index a chat message that was sent or edited while the index was down."""
    message = await hub.index.find_message(chat_id, message_id)
    if message is None:
        message = await hub.index.save_message(
            chat_id,
            message_id,
            text or "",
            event_ids,
            reply_action=reply_action,
            reply_to_message_id=reply_to_message_id,
        )
        return message.pk
    if text is not None and text != message.text:
        await hub.index.update_message_text(message, text)
    for event_id in event_ids:
        try:
            await hub.index.record_event(chat_id, event_id, message)
        except ConflictError as e:
            logger.warning(f"Late event id claim dropped: {e}")
    return message.pk


async def compact_messages(hub, retention_days: Optional[int] = None) -> int:
    days = retention_days or hub.settings.MESSAGE_RETENTION_DAYS
    if not days:
        return 0
    removed = await hub.index.compact(utc_now() - timedelta(days=days))
    logger.info(f"Compacted {removed} message records older than {days} days")
    return removed


def notify_chat(what: str):
    """on_failure hook posting a notice into the chat named by the job's first arg."""

    async def _notify(hub, job, error: BaseException) -> None:
        chat_id = job.args[0] if job.args else None
        if not chat_id:
            return
        if isinstance(error, AuthInvalid):
            reason = "authorization was revoked, reply again to re-authorize"
        else:
            reason = f"gave up after {job.attempt} attempt(s)"
        await hub.transport.send_message(chat_id, f"⚠️ {what}: {reason}")

    return _notify


def build_job_types(settings: Settings) -> List[JobType]:
    def backoff():
        return FibonacciBackoff(settings.JOB_FIBONACCI_BASE_SECONDS, settings.JOB_MAX_RETRY_DELAY_SECONDS)

    return [
        JobType("trello.comment_card", comment_card, pool=TRELLO_POOL, max_attempts=10, policy=backoff(),
                on_failure=notify_chat("Comment was not posted to Trello")),
        JobType("trello.attach_file", attach_file, pool=TRELLO_POOL, max_attempts=3, policy=backoff(),
                on_failure=notify_chat("File was not attached to the Trello card")),
        JobType("trello.download_attachment", download_attachment, pool=TRELLO_POOL, max_attempts=10, policy=backoff()),
        JobType("trello.subscribe_board", subscribe_board, pool=TRELLO_POOL, max_attempts=10, policy=backoff(),
                on_failure=notify_chat("Trello board subscription failed")),
        JobType("trello.resubscribe_all_boards", resubscribe_all_boards, pool=SERIAL_POOL, policy=NoRetry()),
        JobType("sync.replay_event", replay_event, max_attempts=5, policy=backoff()),
        JobType("sync.record_message", record_message, max_attempts=10, policy=backoff()),
        JobType("messages.compact", compact_messages, pool=SERIAL_POOL, policy=NoRetry()),
    ]


def register_jobs(queue: JobQueue, settings: Settings) -> None:
    for pool, size in POOL_SIZES.items():
        queue.add_pool(pool, size)
    for job_type in build_job_types(settings):
        queue.register(job_type)
