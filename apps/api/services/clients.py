"""Client and per-product configuration management."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.client import Client
from models.client_product_config import ClientProductConfig
from models.credit_ledger import CreditLedger
from models.invoice import Invoice
from models.verification_session import VerificationSession
from services.billing_time import month_bounds_utc
from services.crypto import encrypt_secret
from services.errors import ConflictError, NotFoundError, ValidationError
from services.ledger import append_entry

logger = logging.getLogger(__name__)

CLIENT_CODE_PATTERN = re.compile(r"^[A-Z0-9_]+$")
CLIENT_SOURCES = ("api", "tenant")
UNPAID_INVOICE_STATUSES = ("generated", "partial")


def serialize_product_config(config: ClientProductConfig) -> Dict[str, Any]:
    return {
        "product_id": config.product_id,
        "enabled": bool(config.enabled),
        "webhook_url": config.webhook_url,
        "has_webhook_secret": bool(config.webhook_secret_encrypted),
        "success_url": config.success_url,
        "fail_url": config.fail_url,
        "allow_overdraft": bool(config.allow_overdraft),
    }


def serialize_client(client: Client) -> Dict[str, Any]:
    return {
        "id": client.id,
        "name": client.name,
        "code": client.code,
        "status": client.status,
        "client_source": client.client_source,
        "tenant_id": client.tenant_id,
        "contact_email": client.contact_email,
        "created_at": client.created_at.isoformat() if client.created_at else None,
    }


async def get_client_or_404(client_id: str, db: AsyncSession) -> Client:
    client = await db.get(Client, client_id)
    if not client:
        raise NotFoundError("Client not found", client_id=client_id)
    return client


async def create_client(
    db: AsyncSession,
    *,
    name: str,
    code: str,
    actor: str,
    contact_email: Optional[str] = None,
    client_source: str = "api",
    tenant_id: Optional[str] = None,
    allow_overdraft: bool = False,
    webhook_url: Optional[str] = None,
    initial_credits: int = 0,
    initial_credits_type: str = "included",
) -> Dict[str, Any]:
    """Create a client with its default product config and optional opening credits."""
    name = (name or "").strip()
    code = (code or "").strip()
    if not name or not code:
        raise ValidationError("name and code are required")
    if not CLIENT_CODE_PATTERN.match(code):
        raise ValidationError("Code must contain only uppercase letters, numbers, and underscores")
    if client_source not in CLIENT_SOURCES:
        raise ValidationError(f"client_source must be one of: {', '.join(CLIENT_SOURCES)}")
    if client_source == "tenant" and not tenant_id:
        raise ValidationError("tenant_id is required for tenant clients")
    if initial_credits < 0:
        raise ValidationError("initial_credits must not be negative")
    if initial_credits_type not in ("included", "topup"):
        raise ValidationError("initial_credits_type must be 'included' or 'topup'")

    existing = await db.execute(select(Client.id).where(Client.code == code))
    if existing.scalar_one_or_none():
        raise ConflictError("A client with this code already exists", code=code)

    client = Client(
        id=str(uuid.uuid4()),
        name=name,
        code=code,
        status="active",
        client_source=client_source,
        tenant_id=tenant_id,
        contact_email=contact_email,
    )
    config = ClientProductConfig(
        id=str(uuid.uuid4()),
        client_id=client.id,
        product_id=settings.DEFAULT_PRODUCT_ID,
        enabled=True,
        webhook_url=webhook_url,
        allow_overdraft=allow_overdraft,
    )
    try:
        db.add(client)
        db.add(config)
        await db.flush()
        if initial_credits:
            await append_entry(
                client.id,
                settings.DEFAULT_PRODUCT_ID,
                db,
                amount=initial_credits,
                entry_type=initial_credits_type,
                description="Opening credits",
                actor=actor,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("client_created id=%s code=%s source=%s", client.id, client.code, client.client_source)
    data = serialize_client(client)
    data["product_config"] = serialize_product_config(config)
    return data


async def list_clients(db: AsyncSession) -> List[Dict[str, Any]]:
    clients = (await db.execute(select(Client).order_by(Client.created_at.desc()))).scalars().all()

    balances = dict(
        (
            await db.execute(
                select(CreditLedger.client_id, func.coalesce(func.sum(CreditLedger.amount), 0)).group_by(
                    CreditLedger.client_id
                )
            )
        ).all()
    )
    unpaid = {
        row[0]: (int(row[1] or 0), int(row[2] or 0))
        for row in (
            await db.execute(
                select(
                    Invoice.client_id,
                    func.count(Invoice.id),
                    func.sum(Invoice.amount_due_credits - Invoice.amount_paid_credits),
                )
                .where(Invoice.status.in_(UNPAID_INVOICE_STATUSES))
                .group_by(Invoice.client_id)
            )
        ).all()
    }

    items = []
    for client in clients:
        data = serialize_client(client)
        unpaid_count, unpaid_credits = unpaid.get(client.id, (0, 0))
        data["credit_balance"] = int(balances.get(client.id, 0) or 0)
        data["unpaid_invoice_count"] = unpaid_count
        data["unpaid_amount_credits"] = unpaid_credits
        items.append(data)
    return items


async def get_client_detail(client_id: str, db: AsyncSession) -> Dict[str, Any]:
    client = await get_client_or_404(client_id, db)
    configs = (
        await db.execute(select(ClientProductConfig).where(ClientProductConfig.client_id == client_id))
    ).scalars().all()
    data = serialize_client(client)
    data["product_configs"] = [serialize_product_config(config) for config in configs]
    return data


async def update_product_config(
    client_id: str,
    db: AsyncSession,
    *,
    product_id: Optional[str] = None,
    changes: Dict[str, Any],
) -> Dict[str, Any]:
    """Apply a partial config update. ``webhook_secret`` is stored encrypted."""
    await get_client_or_404(client_id, db)
    resolved_product = product_id or settings.DEFAULT_PRODUCT_ID
    result = await db.execute(
        select(ClientProductConfig).where(
            ClientProductConfig.client_id == client_id,
            ClientProductConfig.product_id == resolved_product,
        )
    )
    config = result.scalar_one_or_none()
    if config is None:
        config = ClientProductConfig(id=str(uuid.uuid4()), client_id=client_id, product_id=resolved_product)
        db.add(config)

    for field in ("enabled", "webhook_url", "success_url", "fail_url", "allow_overdraft"):
        if field in changes:
            setattr(config, field, changes[field])
    if "webhook_secret" in changes:
        secret = changes["webhook_secret"]
        config.webhook_secret_encrypted = encrypt_secret(secret) if secret else None

    await db.commit()
    return serialize_product_config(config)


def _count_where(condition) -> Any:
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


async def usage_report(db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Verification volume and billing across all clients, busiest first."""
    month_start, month_end = month_bounds_utc(now)
    session = VerificationSession
    rows = (
        await db.execute(
            select(
                session.client_id,
                func.count(session.id).label("total"),
                _count_where((session.status == "completed") & (session.result == "approved")).label("approved"),
                _count_where((session.status == "completed") & (session.result == "rejected")).label("rejected"),
                _count_where(session.status == "pending").label("pending"),
                _count_where(session.status == "processing").label("processing"),
                _count_where(session.status == "expired").label("expired"),
                _count_where(session.billed.is_(True)).label("billed_total"),
                _count_where(
                    session.billed.is_(True) & (session.billed_at >= month_start) & (session.billed_at < month_end)
                ).label("billed_mtd"),
            )
            .group_by(session.client_id)
            .order_by(func.count(session.id).desc())
        )
    ).all()

    clients = {
        client.id: client
        for client in (await db.execute(select(Client).where(Client.id.in_([row.client_id for row in rows])))).scalars()
    }
    balances = dict(
        (
            await db.execute(
                select(CreditLedger.client_id, func.coalesce(func.sum(CreditLedger.amount), 0)).group_by(
                    CreditLedger.client_id
                )
            )
        ).all()
    )

    counters = ("total", "approved", "rejected", "pending", "processing", "expired", "billed_total", "billed_mtd")
    overall: Dict[str, int] = {name: 0 for name in counters}
    per_client = []
    for row in rows:
        client = clients.get(row.client_id)
        if client is None:
            continue
        for name in counters:
            overall[name] += int(getattr(row, name))
        per_client.append(
            {
                "client_id": client.id,
                "name": client.name,
                "code": client.code,
                "total": int(row.total),
                "approved": int(row.approved),
                "rejected": int(row.rejected),
                "open": int(row.pending) + int(row.processing),
                "billed_total": int(row.billed_total),
                "billed_mtd": int(row.billed_mtd),
                "credit_balance": int(balances.get(client.id, 0) or 0),
            }
        )
    overall["credit_balance"] = sum(int(value or 0) for value in balances.values())
    return {
        "month_start": month_start.isoformat(),
        "overall": overall,
        "clients": per_client,
    }
