from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class WebhookResponse(BaseModel):
    status: str = "ok"
    result: Optional[str] = None


class HookCreateRequest(BaseModel):
    chat_id: str
    service: str
    user_id: Optional[str] = None


class HookCreateResponse(BaseModel):
    chat_id: str
    service: str
    token: str
    url: str


class SubscriptionCreateRequest(BaseModel):
    chat_id: str
    model_id: str
    user_id: str
    model_name: Optional[str] = None
    filters: Optional[Dict[str, bool]] = None


class SubscriptionCreateResponse(BaseModel):
    status: str
    job_id: str


class CredentialSaveRequest(BaseModel):
    user_id: str
    token: str = Field(min_length=1)


class CredentialSaveResponse(BaseModel):
    status: str = "ok"
    fingerprint: str
    resubscribe_job_id: Optional[str] = None
    resumed_reply: bool = False


class JobResponse(BaseModel):
    id: str
    type: str
    pool: str
    status: str
    args: List[Any] = []
    attempt: int
    max_attempts: int
    created_at: float
    run_at: float
    finished_at: Optional[float] = None
    last_error: Optional[str] = None
    result: Any = None


class JobCancelResponse(BaseModel):
    id: str
    cancelled: bool


class TelegramWebhookResponse(BaseModel):
    status: str = "ok"
