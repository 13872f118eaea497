"""
API key authentication for the hosted store.

Keys look like `ctx_<random>`; only their SHA-256 hex digest is stored.
A key resolves to the tenant (`user_id`) whose data the adapter may touch.
"""

import hashlib
import logging
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import AuthenticationError, ValidationError
from ..session import session_scope
from ..utils import generate_id, utc_now
from .tables import ApiKeyRow

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "ctx_"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=utc_now().tzinfo)
    return value


async def validate_api_key(session: AsyncSession, api_key: Optional[str]) -> str:
    """Resolve an API key to its tenant id, stamping `last_used_at`."""
    if not isinstance(api_key, str) or not api_key.strip():
        raise AuthenticationError("API key is required")
    api_key = api_key.strip()
    if not api_key.startswith(API_KEY_PREFIX):
        raise AuthenticationError(
            f"Invalid API key format: keys start with '{API_KEY_PREFIX}'"
        )

    result = await session.execute(
        select(ApiKeyRow).where(ApiKeyRow.key_hash == hash_api_key(api_key))
    )
    row = result.scalars().first()
    if row is None:
        raise AuthenticationError("Invalid API key")

    now = utc_now()
    if row.expires_at is not None and _as_aware(row.expires_at) <= now:
        raise AuthenticationError("API key has expired")

    row.last_used_at = now
    return row.user_id


async def issue_api_key(
    session_factory: async_sessionmaker,
    user_id: str,
    name: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> str:
    """
    Provision a new key for `user_id`.

    The plaintext key is returned once and never stored.
    """
    if not user_id or not user_id.strip():
        raise ValidationError("user_id must not be empty", field="user_id")
    api_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    async with session_scope(session_factory) as session:
        session.add(
            ApiKeyRow(
                id=generate_id(),
                key_hash=hash_api_key(api_key),
                user_id=user_id.strip(),
                name=name,
                created_at=utc_now(),
                expires_at=expires_at,
            )
        )
    logger.info("Issued API key for tenant %s", user_id)
    return api_key
