"""Inbound verification provider webhook."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.errors import ValidationError
from services.provider import ProviderError, get_provider_gateway
from services.sessions import process_provider_webhook
from services.signature import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature

router = APIRouter()
logger = logging.getLogger(__name__)


def decode_provider_body(raw_body: bytes) -> Dict[str, Any]:
    """Parse the callback body, unwrapping an encrypted ``data`` envelope."""
    try:
        body = json.loads(raw_body or b"null")
    except ValueError as exc:
        raise ValidationError("Request body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    envelope = body.get("data")
    if isinstance(envelope, str):
        try:
            return get_provider_gateway().decrypt_payload(envelope)
        except (ValueError, ProviderError) as exc:
            logger.warning("Failed to decrypt provider payload: %s", exc)
            raise ValidationError("Failed to decrypt payload") from exc
    return body


@router.post("/provider")
async def provider_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    timestamp = request.headers.get(TIMESTAMP_HEADER)

    header_verified = False
    if settings.PROVIDER_WEBHOOK_SECRET and (signature or timestamp):
        verify_signature(raw_body, signature, timestamp, settings.PROVIDER_WEBHOOK_SECRET)
        header_verified = True

    payload = decode_provider_body(raw_body)
    return await process_provider_webhook(payload, db, verify_payload_signature=not header_verified)
