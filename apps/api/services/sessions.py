"""Verification session lifecycle and provider callback processing.

A session is billed exactly once, in the same transaction that moves it
into ``completed``. Inbound callbacks are deduplicated by payload hash and
serialized per payload through a claimed ``webhook_logs`` row.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, literal, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.verification_session import VerificationSession
from models.webhook_log import WebhookLog
from services.api_keys import ApiClientContext
from services.billing_time import as_utc, utcnow
from services.errors import ConflictError, NotFoundError, PersistenceError, UpstreamError, ValidationError
from services.ledger import append_entry, check_credit, lock_client
from services.pricing import count_billed_sessions_this_month, resolve_tier, resolve_unit_cost
from services.provider import ProviderError, ProviderTransactionRequest, get_provider_gateway
from services.signature import InvalidSignatureError, MissingSignatureError
from services.storage import upload_session_document
from services.webhooks import schedule_session_webhook

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "provider_callback"
TERMINAL_STATUSES = ("completed", "expired")
OPEN_STATUSES = ("pending", "processing")
REF_ID_MAX_LENGTH = 32

_PENDING_VALUES = {"0", "pending", "not_opened"}
_PROCESSING_VALUES = {"1", "processing"}
_COMPLETED_VALUES = {"2", "completed", "success"}
_EXPIRED_VALUES = {"3", "expired", "failed"}
_APPROVED_VALUES = {"1", "approved", "pass"}

# Where each document image can appear in a provider payload.
_IMAGE_SOURCES: Dict[str, Tuple[Tuple[Optional[str], str], ...]] = {
    "front_document": ((None, "front_document"), ("step1", "front_document_image")),
    "back_document": ((None, "back_document"), ("step1", "back_document_image")),
    "face_image": ((None, "face_image"), ("step1", "face_image")),
    "best_frame": ((None, "best_frame"), ("step2", "best_frame")),
}
_DOCUMENT_KEY_COLUMNS = {
    "front_document": "front_document_key",
    "back_document": "back_document_key",
    "face_image": "face_image_key",
    "best_frame": "best_frame_key",
}


def generate_ref_id(client_code: str) -> str:
    """``{code[:8]}_{base36 ms}_{8 hex}``, never longer than 32 characters."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while millis:
        millis, remainder = divmod(millis, 36)
        encoded = digits[remainder] + encoded
    ref_id = f"{client_code[:8]}_{encoded or '0'}_{secrets.token_hex(4)}"
    return ref_id[:REF_ID_MAX_LENGTH]


def map_provider_status(status: Any, result: Any) -> Tuple[str, Optional[str]]:
    """Translate provider status/result codes into ``(status, result)``."""
    status_value = str(status).strip().lower() if status is not None else ""
    result_value = str(result).strip().lower() if result is not None else ""

    if status_value in _PENDING_VALUES:
        return "pending", None
    if status_value in _PROCESSING_VALUES:
        return "processing", None
    if status_value in _COMPLETED_VALUES:
        return "completed", "approved" if result_value in _APPROVED_VALUES else "rejected"
    if status_value in _EXPIRED_VALUES:
        return "expired", "rejected"
    logger.warning("Unknown provider status %r, treating as processing", status)
    return "processing", None


def payload_hash(ref_id: str, onboarding_id: Any, status: Any, result: Any) -> str:
    canonical = json.dumps(
        {"onboarding_id": onboarding_id, "ref_id": ref_id, "result": result, "status": status},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def serialize_session(session: VerificationSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "client_id": session.client_id,
        "product_id": session.product_id,
        "ref_id": session.ref_id,
        "onboarding_url": session.onboarding_url,
        "status": session.status,
        "result": session.result,
        "reject_message": session.reject_message,
        "document_name": session.document_name,
        "document_number": session.document_number,
        "document_type": session.document_type,
        "billed": bool(session.billed),
        "billed_at": session.billed_at.isoformat() if session.billed_at else None,
        "billed_credits": session.billed_credits,
        "billing_tier_name": session.billing_tier_name,
        "webhook_delivered": bool(session.webhook_delivered),
        "metadata": session.metadata_json or {},
        "expires_at": session.expires_at.isoformat() if session.expires_at else None,
        "created_at": session.created_at.isoformat() if session.created_at else None,
    }


async def create_session(
    api_client: ApiClientContext,
    db: AsyncSession,
    *,
    document_name: str,
    document_number: str,
    document_type: str = "1",
    success_url: Optional[str] = None,
    fail_url: Optional[str] = None,
    webhook_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Open a session with the provider after a read-only credit pre-check."""
    if not (document_name or "").strip() or not (document_number or "").strip():
        raise ValidationError("document_name and document_number are required")

    config = api_client.config
    usage = await count_billed_sessions_this_month(api_client.client_id, db)
    unit_cost = await resolve_unit_cost(api_client.client_id, api_client.product_id, usage, db)
    await check_credit(
        api_client.client_id,
        api_client.product_id,
        db,
        unit_cost=unit_cost,
        allow_overdraft=bool(config.allow_overdraft),
    )

    session = VerificationSession(
        id=str(uuid.uuid4()),
        client_id=api_client.client_id,
        product_id=api_client.product_id,
        ref_id=generate_ref_id(api_client.client_code),
        status="pending",
        document_name=document_name.strip(),
        document_number=document_number.strip(),
        document_type=str(document_type or "1"),
        success_url=success_url or config.success_url,
        fail_url=fail_url or config.fail_url,
        webhook_url=webhook_url or config.webhook_url,
        metadata_json=metadata or {},
        expires_at=utcnow() + timedelta(hours=settings.SESSION_TTL_HOURS),
    )
    db.add(session)
    await db.commit()

    request = ProviderTransactionRequest(
        session_id=session.id,
        ref_id=session.ref_id,
        document_name=session.document_name,
        document_number=session.document_number,
        document_type=session.document_type,
        callback_url=f"{settings.PUBLIC_BASE_URL.rstrip('/')}/webhooks/provider",
        success_url=session.success_url,
        fail_url=session.fail_url,
    )
    try:
        transaction = await get_provider_gateway().create_transaction(request)
    except ProviderError as exc:
        logger.error("Provider transaction failed for session %s: %s", session.id, exc)
        session.status = "expired"
        session.result = "rejected"
        session.reject_message = "Failed to create verification session with provider"
        await db.commit()
        raise UpstreamError("Failed to create verification session", session_id=session.id) from exc

    session.onboarding_id = transaction.onboarding_id
    session.onboarding_url = transaction.onboarding_url
    await db.commit()

    logger.info("session_created id=%s client=%s ref_id=%s", session.id, session.client_id, session.ref_id)
    return serialize_session(session)


async def get_session(session_id: str, db: AsyncSession, *, client_id: Optional[str] = None) -> VerificationSession:
    query = select(VerificationSession).where(VerificationSession.id == session_id)
    if client_id:
        query = query.where(VerificationSession.client_id == client_id)
    session = (await db.execute(query)).scalar_one_or_none()
    if not session:
        raise NotFoundError("Session not found", session_id=session_id)
    return session


async def list_sessions(
    client_id: str,
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    query = select(VerificationSession).where(VerificationSession.client_id == client_id)
    count_query = select(func.count(VerificationSession.id)).where(VerificationSession.client_id == client_id)
    if status:
        query = query.where(VerificationSession.status == status)
        count_query = count_query.where(VerificationSession.status == status)
    sessions = (
        await db.execute(
            query.order_by(VerificationSession.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
            .offset(max(int(offset), 0))
        )
    ).scalars().all()
    total = int((await db.execute(count_query)).scalar() or 0)
    return {"total": total, "sessions": [serialize_session(session) for session in sessions]}


def _package_prefixes(package_name: str) -> List[str]:
    if not package_name:
        return []
    underscored = package_name.replace(".", "_")
    trial = underscored[: -len("_test")] + "_trial" if underscored.endswith("_test") else underscored
    candidates = [
        package_name,
        underscored,
        trial,
        f"{underscored}trial",
        f"{underscored}_trial",
        f"{trial}_",
    ]
    return sorted(set(candidates), key=len, reverse=True)


def ref_id_candidates(raw_ref_id: str) -> List[str]:
    """Exact ref id first, then with the provider's package prefix stripped."""
    candidates = [raw_ref_id]
    for prefix in _package_prefixes(settings.PROVIDER_PACKAGE_NAME):
        if raw_ref_id.startswith(prefix) and len(raw_ref_id) > len(prefix):
            candidates.append(raw_ref_id[len(prefix):])
            break
    return candidates


async def find_session_by_ref_id(raw_ref_id: str, db: AsyncSession) -> Optional[VerificationSession]:
    for candidate in ref_id_candidates(raw_ref_id):
        result = await db.execute(select(VerificationSession).where(VerificationSession.ref_id == candidate))
        session = result.scalar_one_or_none()
        if session:
            return session

    # Stored ref_id is a suffix of what the provider sent back.
    result = await db.execute(
        select(VerificationSession)
        .where(literal(raw_ref_id).like(literal("%") + VerificationSession.ref_id))
        .order_by(VerificationSession.created_at.desc())
        .limit(5)
    )
    for session in result.scalars().all():
        if raw_ref_id.endswith(session.ref_id):
            logger.info("Matched session %s by ref_id suffix of %s", session.id, raw_ref_id)
            return session
    return None


def extract_images(payload: Dict[str, Any]) -> Dict[str, str]:
    images: Dict[str, str] = {}
    for document_type, sources in _IMAGE_SOURCES.items():
        for container, field in sources:
            holder = payload if container is None else payload.get(container)
            if not isinstance(holder, dict):
                continue
            value = holder.get(field)
            if isinstance(value, str) and value:
                images[document_type] = value
                break
    return images


def strip_images(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the payload without base64 image fields, for storage."""
    skip_top = {field for sources in _IMAGE_SOURCES.values() for container, field in sources if container is None}
    skip_top.update({"signature", "data"})
    stripped: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in skip_top:
            continue
        if key in ("step1", "step2") and isinstance(value, dict):
            nested_skip = {field for sources in _IMAGE_SOURCES.values() for container, field in sources if container == key}
            stripped[key] = {k: v for k, v in value.items() if k not in nested_skip}
            continue
        stripped[key] = value
    return stripped


async def _upload_one(client_id: str, session_id: str, document_type: str, encoded: str) -> Optional[str]:
    try:
        return await asyncio.to_thread(upload_session_document, client_id, session_id, document_type, encoded)
    except Exception as exc:
        logger.warning("Failed to upload %s for session %s: %s", document_type, session_id, exc)
        return None


async def upload_session_images(client_id: str, session_id: str, images: Dict[str, str]) -> Dict[str, str]:
    """Upload all images concurrently; failures leave that key out."""
    if not images:
        return {}
    names = list(images.keys())
    keys = await asyncio.gather(*(_upload_one(client_id, session_id, name, images[name]) for name in names))
    return {name: key for name, key in zip(names, keys) if key}


def _insert_for(db: AsyncSession):
    return sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert


async def _claim_webhook_log(hash_value: str, session_id: str, db: AsyncSession) -> bool:
    """Claim a payload hash for processing in its own short transaction.

    Returns False when another delivery already holds or finished the claim.
    An unprocessed claim older than ``WEBHOOK_CLAIM_TIMEOUT_SECONDS`` is taken over.
    """
    now = utcnow()
    try:
        inserted = await db.execute(
            _insert_for(db)(WebhookLog)
            .values(
                id=str(uuid.uuid4()),
                payload_hash=hash_value,
                session_id=session_id,
                source=WEBHOOK_SOURCE,
                processed=False,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["payload_hash"])
            .returning(WebhookLog.id)
        )
        claimed = inserted.scalar_one_or_none() is not None
        if not claimed:
            taken_over = await db.execute(
                update(WebhookLog)
                .where(
                    WebhookLog.payload_hash == hash_value,
                    WebhookLog.processed.is_(False),
                    WebhookLog.created_at < now - timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS),
                )
                .values(created_at=now, session_id=session_id)
                .execution_options(synchronize_session=False)
            )
            claimed = bool(taken_over.rowcount)
            if claimed:
                logger.warning("Taking over stale webhook claim %s for session %s", hash_value, session_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return claimed


async def _release_webhook_log(hash_value: str, db: AsyncSession) -> None:
    """Drop an unprocessed claim so the provider's retry can process it."""
    try:
        await db.execute(
            delete(WebhookLog).where(WebhookLog.payload_hash == hash_value, WebhookLog.processed.is_(False))
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to release webhook claim %s", hash_value)


async def _is_processed(hash_values: List[str], db: AsyncSession) -> bool:
    result = await db.execute(select(WebhookLog.processed).where(WebhookLog.payload_hash.in_(hash_values)))
    return any(result.scalars().all())


def verify_provider_payload_signature(payload: Dict[str, Any], raw_ref_id: str, candidates: List[str]) -> None:
    """Check the provider's in-payload signature when verification is configured."""
    gateway = get_provider_gateway()
    if not gateway.signature_verification_enabled:
        return
    signature = payload.get("signature")
    request_time = payload.get("request_time")
    if not signature or not request_time:
        raise MissingSignatureError("Provider payload is missing signature or request_time")
    for ref_id in [raw_ref_id] + [c for c in candidates if c != raw_ref_id]:
        if gateway.verify_callback_signature(str(signature), ref_id, str(request_time)):
            return
    raise InvalidSignatureError("Invalid provider payload signature")


async def process_provider_webhook(
    payload: Dict[str, Any],
    db: AsyncSession,
    *,
    verify_payload_signature: bool = True,
) -> Dict[str, Any]:
    """Apply one decoded provider callback. Safe to call repeatedly."""
    raw_ref_id = str(payload.get("ref_id") or "").strip()
    onboarding_id = payload.get("onboarding_id")
    if not raw_ref_id or not onboarding_id:
        raise ValidationError("Missing required fields: ref_id and onboarding_id")

    if verify_payload_signature:
        verify_provider_payload_signature(payload, raw_ref_id, ref_id_candidates(raw_ref_id))

    candidate_hashes = [
        payload_hash(candidate, onboarding_id, payload.get("status"), payload.get("result"))
        for candidate in ref_id_candidates(raw_ref_id)
    ]
    if await _is_processed(candidate_hashes, db):
        logger.info("Duplicate provider callback for ref_id=%s", raw_ref_id)
        return {"success": True, "duplicate": True}

    session = await find_session_by_ref_id(raw_ref_id, db)
    if not session:
        raise NotFoundError("Session not found", ref_id=raw_ref_id)

    session_id = session.id
    client_id = session.client_id
    hash_value = payload_hash(session.ref_id, onboarding_id, payload.get("status"), payload.get("result"))
    already_terminal = session.status in TERMINAL_STATUSES
    await db.commit()

    if not await _claim_webhook_log(hash_value, session_id, db):
        if await _is_processed([hash_value], db):
            logger.info("Duplicate provider callback for session %s", session_id)
            return {"success": True, "duplicate": True}
        raise ConflictError("Callback is already being processed", session_id=session_id)

    # Only the delivery holding the claim uploads, outside the locking transaction.
    uploaded: Dict[str, str] = {}
    if not already_terminal:
        uploaded = await upload_session_images(client_id, session_id, extract_images(payload))

    new_status, new_result = map_provider_status(payload.get("status"), payload.get("result"))
    try:
        await lock_client(client_id, db)
        session = (
            await db.execute(
                select(VerificationSession)
                .where(VerificationSession.id == session_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        mark_processed = (
            update(WebhookLog)
            .where(WebhookLog.payload_hash == hash_value)
            .values(processed=True)
            .execution_options(synchronize_session=False)
        )
        if session.status in TERMINAL_STATUSES:
            await db.execute(mark_processed)
            await db.commit()
            logger.info(
                "Ignoring provider status %s for terminal session %s (%s)",
                new_status,
                session_id,
                session.status,
            )
            return {"success": True, "session_id": session_id, "status": session.status, "ignored": True}

        previous_status = session.status
        session.status = new_status
        session.result = new_result
        session.reject_message = payload.get("reject_message") or None
        session.onboarding_id = str(onboarding_id)
        session.provider_response = strip_images(payload)
        for document_type, key in uploaded.items():
            setattr(session, _DOCUMENT_KEY_COLUMNS[document_type], key)

        if new_status == "completed" and not session.billed:
            await _bill_session(session, db)

        await db.execute(mark_processed)
        await db.commit()
    except Exception as exc:
        await db.rollback()
        await _release_webhook_log(hash_value, db)
        if isinstance(exc, (NotFoundError, ValidationError)):
            raise
        logger.exception("Failed to process provider callback for session %s", session_id)
        raise PersistenceError("Failed to process webhook", session_id=session_id) from exc

    logger.info(
        "provider_callback session=%s status=%s->%s result=%s billed=%s",
        session_id,
        previous_status,
        new_status,
        new_result,
        session.billed,
    )
    if previous_status != new_status:
        schedule_session_webhook(session_id)
    return {"success": True, "session_id": session_id, "status": new_status, "result": new_result}


async def _bill_session(session: VerificationSession, db: AsyncSession) -> None:
    """Debit the session at the tier for its position in the month. Client lock held."""
    billed_at = utcnow()
    usage = await count_billed_sessions_this_month(
        session.client_id,
        db,
        exclude_session_id=session.id,
        now=billed_at,
    )
    tier = await resolve_tier(session.client_id, session.product_id, usage, db)
    await append_entry(
        session.client_id,
        session.product_id,
        db,
        amount=-tier.credits_per_unit,
        entry_type="usage",
        reference_id=session.id,
        description=f"Verification session {session.ref_id} ({tier.tier_name})",
        actor="system",
    )
    session.billed = True
    session.billed_at = billed_at
    session.billed_credits = tier.credits_per_unit
    session.billing_tier_name = tier.tier_name
    session.billing_sequence = usage + 1


async def expire_stale_sessions(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    notify: bool = True,
) -> List[str]:
    """Expire open sessions past ``expires_at``. Expired sessions are never billed."""
    cutoff = as_utc(now) if now else utcnow()
    result = await db.execute(
        select(VerificationSession.id).where(
            VerificationSession.status.in_(OPEN_STATUSES),
            VerificationSession.expires_at.is_not(None),
            VerificationSession.expires_at < cutoff,
        )
    )
    session_ids = list(result.scalars().all())
    if not session_ids:
        return []

    await db.execute(
        update(VerificationSession)
        .where(
            VerificationSession.id.in_(session_ids),
            VerificationSession.status.in_(OPEN_STATUSES),
        )
        .values(status="expired", result="rejected", reject_message="Session expired")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Expired %s stale verification sessions", len(session_ids))

    if notify:
        for session_id in session_ids:
            schedule_session_webhook(session_id)
    return session_ids
