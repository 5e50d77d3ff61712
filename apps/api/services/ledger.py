"""Credit ledger and balance accounting helpers."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.client import Client
from models.credit_ledger import LEDGER_ENTRY_TYPES, CreditLedger
from services.errors import InsufficientCreditError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MANUAL_ENTRY_TYPES = ("topup", "adjustment", "refund", "included")


async def lock_client(client_id: str, db: AsyncSession) -> Client:
    """Take the row lock that serializes credit mutations for one client.

    Held until the surrounding transaction commits or rolls back.
    """
    result = await db.execute(
        select(Client)
        .where(Client.id == client_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    client = result.scalar_one_or_none()
    if not client:
        raise NotFoundError("Client not found", client_id=client_id)
    return client


async def get_balance(client_id: str, product_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(
            CreditLedger.client_id == client_id,
            CreditLedger.product_id == product_id,
        )
    )
    return int(result.scalar() or 0)


async def get_client_balance(client_id: str, db: AsyncSession) -> int:
    """Balance across every product of the client."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(CreditLedger.client_id == client_id)
    )
    return int(result.scalar() or 0)


async def append_entry(
    client_id: str,
    product_id: str,
    db: AsyncSession,
    *,
    amount: int,
    entry_type: str,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    actor: Optional[str] = None,
) -> CreditLedger:
    """Append a ledger entry inside the caller's transaction.

    Lock client, read balance, compute the snapshot, insert. The caller
    commits, so the entry is atomic with whatever state change it pays for.
    """
    if entry_type not in LEDGER_ENTRY_TYPES:
        raise ValidationError(f"Unknown ledger entry type: {entry_type}", entry_type=entry_type)

    await lock_client(client_id, db)
    current_balance = await get_balance(client_id, product_id, db)
    next_balance = current_balance + int(amount)
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        client_id=client_id,
        product_id=product_id,
        amount=int(amount),
        balance_after=next_balance,
        entry_type=entry_type,
        reference_id=reference_id,
        description=description,
        created_by=actor,
    )
    db.add(entry)
    await db.flush()
    return entry


async def check_credit(
    client_id: str,
    product_id: str,
    db: AsyncSession,
    *,
    unit_cost: int,
    allow_overdraft: bool,
) -> int:
    """Read-only pre-check used at session creation. Nothing is reserved."""
    balance = await get_balance(client_id, product_id, db)
    if balance < unit_cost and not allow_overdraft:
        raise InsufficientCreditError(balance=balance, required=unit_cost)
    if balance < unit_cost:
        logger.info(
            "Client %s below unit cost on %s (balance=%s, required=%s); overdraft allowed",
            client_id,
            product_id,
            balance,
            unit_cost,
        )
    return balance


async def post_manual_entry(
    client_id: str,
    db: AsyncSession,
    *,
    amount: int,
    entry_type: str,
    actor: str,
    product_id: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    if entry_type not in MANUAL_ENTRY_TYPES:
        raise ValidationError(
            f"Type must be one of: {', '.join(MANUAL_ENTRY_TYPES)}",
            entry_type=entry_type,
        )
    if int(amount) == 0:
        raise ValidationError("amount must be non-zero")

    resolved_product = product_id or settings.DEFAULT_PRODUCT_ID
    try:
        entry = await append_entry(
            client_id,
            resolved_product,
            db,
            amount=int(amount),
            entry_type=entry_type,
            description=description,
            actor=actor,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "ledger_manual_entry client=%s product=%s type=%s amount=%s balance_after=%s",
        client_id,
        resolved_product,
        entry_type,
        entry.amount,
        entry.balance_after,
    )
    return {"entry": serialize_entry(entry), "balance_after": entry.balance_after}


def serialize_entry(entry: CreditLedger) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "product_id": entry.product_id,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "entry_type": entry.entry_type,
        "reference_id": entry.reference_id,
        "description": entry.description,
        "created_by": entry.created_by,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_ledger_summary(
    client_id: str,
    db: AsyncSession,
    *,
    product_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    resolved_product = product_id or settings.DEFAULT_PRODUCT_ID
    balance = await get_balance(client_id, resolved_product, db)
    result = await db.execute(
        select(CreditLedger)
        .where(
            CreditLedger.client_id == client_id,
            CreditLedger.product_id == resolved_product,
        )
        .order_by(CreditLedger.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
        .offset(max(int(offset), 0))
    )
    entries = result.scalars().all()
    return {
        "client_id": client_id,
        "product_id": resolved_product,
        "balance": balance,
        "entries": [serialize_entry(entry) for entry in entries],
    }
