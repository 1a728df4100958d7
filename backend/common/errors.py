"""Error taxonomy shared by the ingestion path, the reply path and job handlers.

Every error carries a ``retryable`` flag. The Job Queue uses it to decide
between another attempt and the terminal ``failed`` state; the HTTP layer uses
it to decide whether a webhook delivery should be rejected so the provider
retries it.
"""
import httpx


class HubError(Exception):
    retryable = False


class TransientUpstream(HubError):
    """Network failure, 429 or 5xx from an external API."""

    retryable = True


class AuthInvalid(HubError):
    """Credential expired or revoked; needs re-authorization, not a retry."""

    def __init__(self, message: str = "credential rejected", service: str | None = None):
        super().__init__(message)
        self.service = service


class ConflictError(HubError):
    """An EventID is already claimed by a different message in the same chat."""

    def __init__(self, chat_id: str, event_id: str, owner_pk: str | None = None):
        super().__init__(f"event {event_id} in chat {chat_id} already belongs to message {owner_pk}")
        self.chat_id = chat_id
        self.event_id = event_id
        self.owner_pk = owner_pk


class NotFound(HubError):
    """Referenced entity vanished upstream."""


class MalformedPayload(HubError):
    def __init__(self, message: str, raw: bytes | str | None = None):
        super().__init__(message)
        self.raw = raw


class StoreUnavailable(HubError):
    """Backing store (database or Redis) is unreachable."""

    retryable = True


class JobPending(HubError):
    """A synchronous job outlived its caller's deadline and keeps running."""

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, HubError):
        return exc.retryable
    # Unclassified failures get the benefit of the doubt.
    return True


def raise_for_upstream(resp: httpx.Response, service: str | None = None) -> None:
    """Map an external API response onto the error taxonomy."""
    code = resp.status_code
    if code < 400:
        return
    try:
        where = f"{resp.request.method} {resp.request.url.path}"
    except RuntimeError:
        where = "request"
    detail = f"{where} -> {code}: {resp.text[:200]}"
    if code in (401, 403):
        raise AuthInvalid(detail, service=service)
    if code == 404:
        raise NotFound(detail)
    if code == 429 or code >= 500:
        raise TransientUpstream(detail)
    raise HubError(detail)
