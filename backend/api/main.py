import json
import logging
import uuid
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text

import redis.asyncio as redis

from common.config import settings
from common.engine import IncomingMessage, SyncResult
from common.errors import MalformedPayload, StoreUnavailable
from common.hub import HubContext, build_hub
from common.jobs import Job
from common.telegram import escape_html, extract_command, parse_update, verify_telegram_secret
from api.schemas import (
    WebhookResponse, HookCreateRequest, HookCreateResponse,
    SubscriptionCreateRequest, SubscriptionCreateResponse,
    CredentialSaveRequest, CredentialSaveResponse,
    JobResponse, JobCancelResponse, TelegramWebhookResponse,
)

logger = logging.getLogger(__name__)
app = FastAPI(title="Chat Sync Hub API")

# DB Setup
engine = create_async_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

hub = build_hub(settings, redis_client, AsyncSessionLocal)


async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_hub() -> HubContext:
    return hub

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def get_authenticated_user(request: Request):
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ")[1]
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return "usr_admin"


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        type=job.type,
        pool=job.pool,
        status=job.status.value,
        args=job.args,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        created_at=job.created_at,
        run_at=job.run_at,
        finished_at=job.finished_at,
        last_error=job.last_error,
        result=job.result,
    )

# --- Health ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

# --- Webhook Ingress ---

@app.api_route("/v1/webhooks/{service}/{token}", methods=["GET", "HEAD"])
async def verify_webhook_url(service: str, token: str):
    # Trello checks the callback URL with HEAD before creating a webhook.
    return {"status": "ok"}


@app.post("/v1/webhooks/{service}/{token}", response_model=WebhookResponse)
async def receive_webhook(service: str, token: str, request: Request, hub: HubContext = Depends(get_hub)):
    adapter = hub.adapters.get(service)
    if adapter is None:
        raise HTTPException(status_code=404, detail="Unknown service")
    try:
        endpoint = await hub.hooks.resolve(service, token)
    except SQLAlchemyError as e:
        logger.error(f"Hook lookup failed for {service}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Store unavailable")
    if endpoint is None:
        raise HTTPException(status_code=404, detail="Unknown hook")

    body = await request.body()
    try:
        raw = json.loads(body)
        event = adapter.parse(raw, endpoint)
    except (ValueError, MalformedPayload) as e:
        logger.warning(f"Malformed {service} webhook for chat {endpoint.chat_id}: {e}; body={body[:4096]!r}")
        return {"status": "ignored"}
    if event is None:
        return {"status": "ignored"}

    try:
        result = await hub.engine.process(event, adapter)
    except StoreUnavailable as e:
        logger.error(f"Store unavailable while processing {service} action {event.action_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Store unavailable")

    if result == SyncResult.DEFERRED:
        return {"status": "deferred", "result": result.value}
    return {"status": "ok", "result": result.value}


@app.post("/v1/hooks", response_model=HookCreateResponse)
async def create_hook(
    payload: HookCreateRequest,
    user_id: str = Depends(get_authenticated_user),
    hub: HubContext = Depends(get_hub),
):
    if payload.service not in hub.adapters:
        raise HTTPException(status_code=400, detail=f"Unsupported service {payload.service}")
    endpoint = await hub.hooks.ensure(payload.chat_id, payload.service, payload.user_id)
    return HookCreateResponse(
        chat_id=endpoint.chat_id,
        service=endpoint.service,
        token=endpoint.token,
        url=settings.hook_url(endpoint.service, endpoint.token),
    )


@app.post("/v1/subscriptions/trello", response_model=SubscriptionCreateResponse)
async def subscribe_trello_board(
    payload: SubscriptionCreateRequest,
    user_id: str = Depends(get_authenticated_user),
    hub: HubContext = Depends(get_hub),
):
    if payload.filters is not None:
        await hub.subscriptions.upsert(
            payload.chat_id, "trello", payload.model_id, user_id=payload.user_id, filters=payload.filters
        )
    job_id = await hub.jobs.enqueue(
        "trello.subscribe_board", payload.chat_id, payload.model_id, payload.user_id, payload.model_name
    )
    return SubscriptionCreateResponse(status="queued", job_id=job_id)


@app.put("/v1/credentials/{service}", response_model=CredentialSaveResponse)
async def save_credential(
    service: str,
    payload: CredentialSaveRequest,
    user_id: str = Depends(get_authenticated_user),
    hub: HubContext = Depends(get_hub),
):
    if service not in hub.adapters:
        raise HTTPException(status_code=400, detail=f"Unsupported service {service}")
    fp = await hub.credentials.save(payload.user_id, service, payload.token)
    job_id: Optional[str] = None
    if service == "trello":
        job_id = await hub.jobs.enqueue("trello.resubscribe_all_boards", payload.user_id)
    resumed = await hub.engine.resume_after_auth(payload.user_id)
    return CredentialSaveResponse(fingerprint=fp, resubscribe_job_id=job_id, resumed_reply=resumed)

# --- Jobs ---

@app.get("/v1/jobs/failed", response_model=list[JobResponse], dependencies=[Depends(get_authenticated_user)])
async def list_failed_jobs(limit: int = 100, hub: HubContext = Depends(get_hub)):
    jobs = await hub.jobs.failed_jobs(limit=max(1, min(limit, 500)))
    return [_job_response(job) for job in jobs]


@app.get("/v1/jobs/{job_id}", response_model=JobResponse, dependencies=[Depends(get_authenticated_user)])
async def get_job(job_id: str, hub: HubContext = Depends(get_hub)):
    job = await hub.jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@app.delete("/v1/jobs/{job_id}", response_model=JobCancelResponse, dependencies=[Depends(get_authenticated_user)])
async def cancel_job(job_id: str, hub: HubContext = Depends(get_hub)):
    job = await hub.jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    cancelled = await hub.jobs.cancel(job_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Job is {job.status.value}, only queued jobs can be cancelled")
    return JobCancelResponse(id=job_id, cancelled=True)

# --- Telegram ---

async def _handle_start(data: dict, hub: HubContext) -> None:
    endpoint = await hub.hooks.ensure(data["chat_id"], "webhook", data.get("user_id"))
    url = settings.hook_url("webhook", endpoint.token)
    await hub.transport.send_message(
        data["chat_id"],
        "Hi here! You can send Slack-compatible simple webhooks to <b>this chat</b> using this URL:\n"
        f"<code>{escape_html(url)}</code>\n\nExample (JSON payload):\n"
        '<pre>{"text":"So advanced\\nMuch innovations"}</pre>',
    )


@app.post("/v1/integrations/telegram/webhook", response_model=TelegramWebhookResponse)
async def telegram_webhook(request: Request, hub: HubContext = Depends(get_hub)):
    # 1. Validate secret
    if not verify_telegram_secret(request.headers, settings.TELEGRAM_WEBHOOK_SECRET):
        raise HTTPException(status_code=403, detail="Unauthorized webhook source")

    # 2. Parse update
    try:
        update_json = await request.json()
    except Exception:
        return {"status": "ignored"}

    data = parse_update(update_json)
    if not data:
        return {"status": "ignored"}

    chat_id = data["chat_id"]
    if data["kind"] == "callback":
        try:
            await hub.transport.answer_callback_query(data["callback_query_id"])
        except Exception as e:
            logger.warning(f"Failed to answer callback query in chat {chat_id}: {e}")
        return {"status": "ignored"}

    command, _ = extract_command(data.get("text") or "")
    try:
        if command == "/start":
            await _handle_start(data, hub)
            return {"status": "ok"}
        handled = await hub.engine.handle_reply(IncomingMessage(
            chat_id=chat_id,
            message_id=data["message_id"],
            user_id=data.get("user_id"),
            username=data.get("username"),
            text=data.get("text") or "",
            reply_to_message_id=data.get("reply_to_message_id"),
            document=data.get("document"),
        ))
    except Exception as e:
        logger.error(f"Telegram routing failed: {e}")
        try:
            await hub.transport.send_message(chat_id, "Sorry, I had trouble processing that message. Please try again later.")
        except Exception as send_error:
            logger.error(f"Failed to report routing failure to chat {chat_id}: {send_error}")
        return {"status": "error"}

    return {"status": "ok" if handled else "ignored"}
