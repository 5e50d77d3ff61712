"""Outbound signed webhook delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.client_product_config import ClientProductConfig
from models.tenant_billing_period import TenantBillingPeriod
from models.verification_session import VerificationSession
from services.billing_time import utcnow
from services.clients import get_client_or_404
from services.crypto import decrypt_secret
from services.errors import ConflictError, NotFoundError, ValidationError
from services.ledger import lock_client
from services.signature import EVENT_TYPE_HEADER, SIGNATURE_HEADER, TIMESTAMP_HEADER, sign_payload
from services.webhook_queue import enqueue_session_webhook

logger = logging.getLogger(__name__)

SESSION_EVENT_TYPES = {
    "pending": "verification.session.started",
    "processing": "verification.session.processing",
    "completed": "verification.session.completed",
    "expired": "verification.session.expired",
}
PAYMENT_RECORDED_EVENT = "payment.recorded"

_background_tasks: Set[asyncio.Task] = set()


class WebhookDeliveryError(RuntimeError):
    """Raised by the queue job so RQ schedules a retry."""


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


async def dispatch_webhook(
    url: str,
    payload: Dict[str, Any],
    *,
    secret: str,
    event_type: str,
    client: Optional[httpx.AsyncClient] = None,
) -> DeliveryResult:
    """Sign and POST one event. Transport and HTTP failures are returned, not raised."""
    raw_body = json.dumps(payload, default=_json_default, separators=(",", ":"))
    headers = {
        "Content-Type": "application/json",
        EVENT_TYPE_HEADER: event_type,
    }
    if secret:
        signed = sign_payload(raw_body, secret)
        headers[SIGNATURE_HEADER] = signed.signature
        headers[TIMESTAMP_HEADER] = signed.timestamp
    else:
        logger.warning("Dispatching %s to %s without a signing secret", event_type, url)

    try:
        if client is not None:
            response = await client.post(url, content=raw_body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=settings.OUTBOUND_WEBHOOK_TIMEOUT_SECONDS) as http_client:
                response = await http_client.post(url, content=raw_body, headers=headers)
    except httpx.HTTPError as exc:
        message = str(exc) or exc.__class__.__name__
        logger.warning("Webhook %s to %s failed: %s", event_type, url, message)
        return DeliveryResult(delivered=False, error=message)

    if response.is_success:
        return DeliveryResult(delivered=True, status_code=response.status_code)
    logger.warning("Webhook %s to %s returned HTTP %s", event_type, url, response.status_code)
    return DeliveryResult(
        delivered=False,
        status_code=response.status_code,
        error=f"HTTP {response.status_code}",
    )


def resolve_signing_secret(config: Optional[ClientProductConfig]) -> str:
    if config is not None and config.webhook_secret_encrypted:
        return decrypt_secret(config.webhook_secret_encrypted)
    return settings.OUTBOUND_WEBHOOK_SECRET or ""


async def _get_product_config(client_id: str, product_id: str, db: AsyncSession) -> Optional[ClientProductConfig]:
    result = await db.execute(
        select(ClientProductConfig).where(
            ClientProductConfig.client_id == client_id,
            ClientProductConfig.product_id == product_id,
        )
    )
    return result.scalar_one_or_none()


def build_session_event(session: VerificationSession) -> Dict[str, Any]:
    metadata = session.metadata_json or {}
    event_type = SESSION_EVENT_TYPES.get(session.status, "verification.session.updated")
    payload: Dict[str, Any] = {
        "event": event_type,
        "session_id": session.id,
        "ref_id": session.ref_id,
        "status": session.status,
        "result": session.result,
        "reject_message": session.reject_message,
        "document_name": session.document_name,
        "document_number": session.document_number,
        "billed": bool(session.billed),
        "billed_credits": session.billed_credits,
        "metadata": metadata,
        "timestamp": utcnow().isoformat(),
    }
    if isinstance(metadata, dict) and metadata.get("tenant_id"):
        payload["tenant_id"] = metadata.get("tenant_id")
    documents = {
        "front_document": session.front_document_key,
        "back_document": session.back_document_key,
        "face_image": session.face_image_key,
        "best_frame": session.best_frame_key,
    }
    documents = {name: key for name, key in documents.items() if key}
    if documents:
        payload["documents"] = documents
    return payload


async def deliver_session_webhook(
    session_id: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[DeliveryResult]:
    """Deliver the current state of a session and record the attempt."""
    async with async_session_maker() as db:
        result = await db.execute(select(VerificationSession).where(VerificationSession.id == session_id))
        session = result.scalar_one_or_none()
        if not session:
            logger.warning("Webhook delivery skipped: session %s not found", session_id)
            return None

        config = await _get_product_config(session.client_id, session.product_id, db)
        webhook_url = session.webhook_url or (config.webhook_url if config else None)
        if not webhook_url:
            logger.warning("Session %s has no webhook_url configured", session_id)
            return None

        payload = build_session_event(session)
        delivery = await dispatch_webhook(
            webhook_url,
            payload,
            secret=resolve_signing_secret(config),
            event_type=payload["event"],
            client=client,
        )

        values: Dict[str, Any] = {
            "webhook_attempts": VerificationSession.webhook_attempts + 1,
            "webhook_last_error": None if delivery.delivered else delivery.error,
        }
        if delivery.delivered:
            values["webhook_delivered"] = True
            values["webhook_delivered_at"] = utcnow()
        await db.execute(
            update(VerificationSession).where(VerificationSession.id == session_id).values(**values)
        )
        await db.commit()

    logger.info(
        "session_webhook session=%s event=%s delivered=%s status=%s",
        session_id,
        payload["event"],
        delivery.delivered,
        delivery.status_code,
    )
    return delivery


def deliver_session_webhook_job(session_id: str) -> None:
    """RQ worker entrypoint; raising makes RQ retry with backoff."""
    delivery = asyncio.run(deliver_session_webhook(session_id))
    if delivery is not None and not delivery.delivered:
        raise WebhookDeliveryError(f"Webhook delivery for session {session_id} failed: {delivery.error}")


async def _deliver_once(session_id: str) -> None:
    try:
        await deliver_session_webhook(session_id)
    except Exception:
        logger.exception("In-process webhook delivery for session %s crashed", session_id)


def schedule_session_webhook(session_id: str) -> str:
    """Queue delivery; fall back to a single in-process attempt if Redis is down."""
    try:
        job = enqueue_session_webhook(session_id)
        logger.info("Queued webhook delivery %s for session %s", job.id, session_id)
        return "queued"
    except Exception as exc:
        logger.warning("Webhook queue unavailable for session %s, delivering in-process: %s", session_id, exc)

    task = asyncio.get_running_loop().create_task(_deliver_once(session_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return "inline"


def _tenant_payment_url(base_url: str) -> str:
    if "/payment" in base_url:
        return base_url
    return f"{base_url.rstrip('/')}/payment"


async def mark_tenant_period_paid(
    client_id: str,
    db: AsyncSession,
    *,
    period_start: date,
    period_end: date,
    paid_amount: Optional[Decimal],
    actor: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Settle a tenant billing period and report it synchronously to the tenant."""
    if period_end < period_start:
        raise ValidationError("period_end must not be before period_start")

    try:
        tenant = await lock_client(client_id, db)
        if tenant.client_source != "tenant":
            raise ConflictError("Mark as paid is only available for tenant clients", client_id=client_id)

        config = await _get_product_config(client_id, settings.DEFAULT_PRODUCT_ID, db)
        base_url = (config.webhook_url if config else None) or settings.TENANT_PAYMENT_WEBHOOK_URL
        if not base_url:
            raise ValidationError("Webhook URL not configured for tenant payments", client_id=client_id)

        paid_at = utcnow()
        amount = paid_amount if paid_amount is not None else Decimal("0")
        result = await db.execute(
            select(TenantBillingPeriod).where(
                TenantBillingPeriod.client_id == client_id,
                TenantBillingPeriod.period_start == period_start,
            )
        )
        period = result.scalar_one_or_none()
        if period is None:
            period = TenantBillingPeriod(client_id=client_id, period_start=period_start)
            db.add(period)
        period.period_end = period_end
        period.payment_status = "paid"
        period.paid_at = paid_at
        period.paid_amount = amount
        period.recorded_by = actor
        period.webhook_delivered = False
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    tenant_id = tenant.tenant_id or tenant.code
    payload = {
        "event": PAYMENT_RECORDED_EVENT,
        "tenant_id": tenant_id,
        "client_id": client_id,
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "paid_at": paid_at.isoformat(),
        "paid_amount": str(amount),
        "timestamp": paid_at.isoformat(),
    }
    delivery = await dispatch_webhook(
        _tenant_payment_url(base_url),
        payload,
        secret=resolve_signing_secret(config),
        event_type=PAYMENT_RECORDED_EVENT,
        client=client,
    )

    period.webhook_delivered = delivery.delivered
    period.webhook_last_error = delivery.error
    await db.commit()

    return {
        "success": True,
        "tenant_id": tenant_id,
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "webhook_delivered": delivery.delivered,
        "webhook_error": delivery.error,
    }


async def list_tenant_billing_periods(client_id: str, db: AsyncSession, *, limit: int = 24) -> List[Dict[str, Any]]:
    """Most recent settled periods first, as reported to the tenant."""
    client = await get_client_or_404(client_id, db)
    if client.client_source != "tenant":
        raise ConflictError("Billing periods are only tracked for tenant clients", client_id=client_id)
    result = await db.execute(
        select(TenantBillingPeriod)
        .where(TenantBillingPeriod.client_id == client_id)
        .order_by(TenantBillingPeriod.period_start.desc())
        .limit(max(int(limit), 1))
    )
    return [
        {
            "id": period.id,
            "period_start": period.period_start.isoformat(),
            "period_end": period.period_end.isoformat() if period.period_end else None,
            "payment_status": period.payment_status,
            "paid_at": period.paid_at.isoformat() if period.paid_at else None,
            "paid_amount": str(period.paid_amount) if period.paid_amount is not None else None,
            "recorded_by": period.recorded_by,
            "webhook_delivered": period.webhook_delivered,
            "webhook_last_error": period.webhook_last_error,
        }
        for period in result.scalars().all()
    ]


async def redeliver_session_webhook(session_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Admin-triggered synchronous re-delivery of a session event."""
    result = await db.execute(select(VerificationSession.id).where(VerificationSession.id == session_id))
    if result.scalar_one_or_none() is None:
        raise NotFoundError("Session not found", session_id=session_id)
    delivery = await deliver_session_webhook(session_id)
    if delivery is None:
        raise ValidationError("Session has no webhook_url configured", session_id=session_id)
    return {
        "session_id": session_id,
        "delivered": delivery.delivered,
        "status_code": delivery.status_code,
        "error": delivery.error,
    }
