"""Client API key issuance and authentication."""

from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.client import Client
from models.client_api_key import ClientApiKey
from models.client_product_config import ClientProductConfig
from services.billing_time import utcnow
from services.errors import AuthError, NotFoundError, ValidationError

API_KEY_PREFIX = "mb"
API_KEY_ENVIRONMENTS = ("live", "test")


@dataclass(frozen=True)
class ApiClientContext:
    client_id: str
    client_code: str
    product_id: str
    api_key_id: str
    config: ClientProductConfig


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(environment: str = "live") -> Tuple[str, str, str]:
    """Return ``(raw_key, key_hash, display_prefix)``."""
    if environment not in API_KEY_ENVIRONMENTS:
        raise ValidationError(f"environment must be one of: {', '.join(API_KEY_ENVIRONMENTS)}")
    raw_key = f"{API_KEY_PREFIX}_{environment}_{secrets.token_urlsafe(24)[:32]}"
    return raw_key, hash_api_key(raw_key), raw_key[:12]


async def create_api_key(
    client_id: str,
    product_id: str,
    db: AsyncSession,
    *,
    actor: str,
    environment: str = "live",
) -> Dict[str, Any]:
    """Issue a key. The raw key is only ever returned here."""
    client = await db.get(Client, client_id)
    if not client:
        raise NotFoundError("Client not found", client_id=client_id)

    raw_key, key_hash, prefix = generate_api_key(environment)
    record = ClientApiKey(
        id=str(uuid.uuid4()),
        client_id=client_id,
        product_id=product_id,
        api_key_hash=key_hash,
        key_prefix=prefix,
        status="active",
        created_by=actor,
    )
    db.add(record)
    await db.commit()
    return {
        "id": record.id,
        "client_id": client_id,
        "product_id": product_id,
        "api_key": raw_key,
        "key_prefix": prefix,
        "status": record.status,
    }


async def revoke_api_key(client_id: str, key_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(ClientApiKey).where(ClientApiKey.id == key_id, ClientApiKey.client_id == client_id)
    )
    record = result.scalar_one_or_none()
    if not record:
        raise NotFoundError("API key not found", key_id=key_id)
    record.status = "revoked"
    await db.commit()
    return {"id": record.id, "status": record.status}


async def authenticate_api_key(raw_key: Optional[str], db: AsyncSession) -> ApiClientContext:
    """Resolve an API key to an active client with an enabled product config."""
    if not raw_key:
        raise AuthError("Missing or invalid Authorization header")

    result = await db.execute(
        select(ClientApiKey).where(
            ClientApiKey.api_key_hash == hash_api_key(raw_key),
            ClientApiKey.status == "active",
        )
    )
    key = result.scalar_one_or_none()
    if not key:
        raise AuthError("Invalid API key")

    client = await db.get(Client, key.client_id)
    if not client or client.status != "active":
        raise AuthError("Invalid API key")

    config_result = await db.execute(
        select(ClientProductConfig).where(
            ClientProductConfig.client_id == client.id,
            ClientProductConfig.product_id == key.product_id,
        )
    )
    config = config_result.scalar_one_or_none()
    if not config or not config.enabled:
        raise AuthError("Product is not enabled for this API key")

    key.last_used_at = utcnow()
    await db.commit()
    return ApiClientContext(
        client_id=client.id,
        client_code=client.code,
        product_id=key.product_id,
        api_key_id=key.id,
        config=config,
    )
