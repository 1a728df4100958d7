import hashlib
import logging
import uuid
from typing import Optional

from sqlalchemy import select

from common.models import CredentialStatus, ServiceCredential, utc_now

logger = logging.getLogger(__name__)


def fingerprint(token: str) -> str:
    """Stable non-reversible identifier for a token, safe to store and compare."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class CredentialStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get_token(self, user_id: Optional[str], service: str) -> Optional[str]:
        if not user_id:
            return None
        async with self._session_factory() as db:
            row = await self._row(db, user_id, service)
            if row is None or row.status != CredentialStatus.valid:
                return None
            return row.token

    async def save(self, user_id: str, service: str, token: str) -> str:
        async with self._session_factory() as db:
            row = await self._row(db, user_id, service)
            if row is None:
                row = ServiceCredential(id=str(uuid.uuid4()), user_id=user_id, service=service)
                db.add(row)
            row.token = token
            row.status = CredentialStatus.valid
            row.updated_at = utc_now()
            await db.commit()
        logger.info(f"Stored {service} credential for user {user_id}")
        return fingerprint(token)

    async def reset(self, user_id: str, service: str) -> None:
        """Mark the credential revoked so the next use asks for re-authorization."""
        async with self._session_factory() as db:
            row = await self._row(db, user_id, service)
            if row is None:
                return
            row.status = CredentialStatus.revoked
            row.token = None
            row.updated_at = utc_now()
            await db.commit()
        logger.warning(f"Revoked {service} credential for user {user_id}")

    @staticmethod
    async def _row(db, user_id: str, service: str) -> Optional[ServiceCredential]:
        stmt = select(ServiceCredential).where(
            ServiceCredential.user_id == user_id,
            ServiceCredential.service == service,
        )
        return (await db.execute(stmt)).scalar_one_or_none()
