from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.actions import ActionRegistry
from common.cache import CacheStore
from common.config import Settings
from common.credentials import CredentialStore
from common.engine import SyncEngine
from common.event_index import EventIndex
from common.jobs import JobQueue
from common.outbound import register_jobs
from common.subscriptions import HookEndpointStore, SubscriptionStore
from common.telegram import TelegramTransport
from common import trello
from common.webhook import GenericWebhookAdapter


@dataclass
class HubContext:
    """Everything a job handler or reply action may need, built once per process."""

    settings: Settings
    cache: CacheStore
    index: EventIndex
    jobs: JobQueue
    transport: Any
    actions: ActionRegistry
    credentials: CredentialStore
    subscriptions: SubscriptionStore
    hooks: HookEndpointStore
    engine: SyncEngine
    adapters: Dict[str, Any]
    session_factory: Any


def build_hub(settings: Settings, redis_client, session_factory, transport: Optional[Any] = None) -> HubContext:
    cache = CacheStore(redis_client)
    index = EventIndex(session_factory)
    jobs = JobQueue(
        redis_client,
        prefix=settings.JOB_QUEUE_PREFIX,
        session_factory=session_factory,
        default_pool_size=settings.JOB_DEFAULT_POOL_SIZE,
        finished_ttl=settings.JOB_FINISHED_TTL_SECONDS,
        sync_timeout=settings.JOB_SYNC_TIMEOUT_SECONDS,
        poll_timeout=settings.JOB_POLL_TIMEOUT_SECONDS,
        lease_seconds=settings.JOB_LEASE_SECONDS,
    )
    if transport is None:
        transport = TelegramTransport(
            settings.TELEGRAM_BOT_TOKEN,
            api_base=settings.TELEGRAM_API_BASE,
            timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS,
        )

    actions = ActionRegistry()
    trello.register_actions(actions)
    credentials = CredentialStore(session_factory)
    subscriptions = SubscriptionStore(session_factory)
    hooks = HookEndpointStore(session_factory)

    engine = SyncEngine(
        cache,
        index,
        jobs,
        transport,
        actions,
        credentials=credentials,
        dedup_ttl=settings.DEDUP_TTL_SECONDS,
        recency_window=settings.RECENCY_WINDOW_SECONDS,
        anti_flood_ttl=settings.ANTI_FLOOD_TTL_SECONDS,
    )
    adapters = {
        trello.SERVICE: trello.TrelloAdapter(
            cache,
            subscriptions,
            credentials,
            actions,
            api_key=settings.TRELLO_API_KEY,
            api_base=settings.TRELLO_API_BASE,
            entity_ttl=settings.ENTITY_CACHE_TTL_SECONDS,
            nickname_ttl=settings.NICKNAME_CACHE_TTL_SECONDS,
            profile_ttl=settings.PROFILE_CACHE_TTL_SECONDS,
            max_attachment_bytes=settings.TRELLO_MAX_ATTACHMENT_BYTES,
        ),
        "webhook": GenericWebhookAdapter(),
    }

    hub = HubContext(
        settings=settings,
        cache=cache,
        index=index,
        jobs=jobs,
        transport=transport,
        actions=actions,
        credentials=credentials,
        subscriptions=subscriptions,
        hooks=hooks,
        engine=engine,
        adapters=adapters,
        session_factory=session_factory,
    )
    register_jobs(jobs, settings)
    jobs.context = hub
    engine.hub = hub
    return hub
