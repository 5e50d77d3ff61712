"""Periodic invoice generation.

Generation runs in two phases. Phase 1 takes the client lock, computes the
period and amounts, and inserts a ``pending`` invoice with its line items.
Phase 2 renders and stores the document outside any lock, then marks the
invoice ``generated`` and supersedes the unpaid invoices it carried over.
A render failure removes the pending invoice again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.client import Client
from models.invoice import Invoice, InvoiceLineItem
from models.payment import Payment
from models.verification_session import VerificationSession
from services.billing_time import as_utc, last_day_of_previous_month, local_date, local_today, period_bounds_utc, utcnow
from services.documents import store_invoice_document
from services.errors import BillingError, ConflictError, NoBillablePeriodError, NotFoundError, UpstreamError
from services.ledger import get_client_balance, lock_client
from services.pricing import DEFAULT_TIER_NAME
from services.storage import document_url

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
SETTLED_PERIOD_STATUSES = ("generated", "partial", "paid", "superseded")
UNPAID_STATUSES = ("generated", "partial")


@dataclass(frozen=True)
class UsageBucket:
    product_id: str
    tier_name: str
    session_count: int
    credits_per_session: int
    total_credits: int


@dataclass(frozen=True)
class UnpaidInvoice:
    id: str
    invoice_number: str
    unpaid_credits: int


@dataclass
class InvoiceComputation:
    period_start: date
    period_end: date
    due_date: date
    usage: List[UsageBucket] = field(default_factory=list)
    unpaid: List[UnpaidInvoice] = field(default_factory=list)
    total_usage_credits: int = 0
    previous_balance_credits: int = 0
    credit_balance: int = 0
    amount_due_credits: int = 0
    amount_due_currency: Decimal = Decimal("0.00")
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0.00")
    total_with_tax: Decimal = Decimal("0.00")


def credits_to_currency(credits: int) -> Decimal:
    return (Decimal(int(credits)) / Decimal(settings.CREDITS_PER_CURRENCY_UNIT)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_tax(amount: Decimal, rate: Optional[Decimal] = None) -> Decimal:
    tax_rate = Decimal(str(settings.INVOICE_TAX_RATE if rate is None else rate))
    return (Decimal(amount) * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Any) -> str:
    return f"{Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP)}"


async def calculate_billing_period(
    client: Client,
    db: AsyncSession,
    *,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Tuple[date, date]:
    """Inclusive local-date period following the last settled invoice."""
    result = await db.execute(
        select(func.max(Invoice.period_end)).where(
            Invoice.client_id == client.id,
            Invoice.status.in_(SETTLED_PERIOD_STATUSES),
        )
    )
    last_period_end = result.scalar()
    if last_period_end is not None:
        period_start = last_period_end + timedelta(days=1)
    else:
        period_start = local_date(client.created_at)
    period_end = end_date or (local_today(now) - timedelta(days=1))
    return period_start, period_end


async def query_usage_by_tier(
    client_id: str,
    period_start: date,
    period_end: date,
    db: AsyncSession,
) -> List[UsageBucket]:
    """Billed sessions in the period, bucketed by the tier recorded at billing time."""
    window_start, window_end = period_bounds_utc(period_start, period_end)
    tier_name = func.coalesce(VerificationSession.billing_tier_name, DEFAULT_TIER_NAME)
    credits = func.coalesce(VerificationSession.billed_credits, 0)
    result = await db.execute(
        select(
            VerificationSession.product_id,
            tier_name,
            credits,
            func.count(VerificationSession.id),
        )
        .where(
            VerificationSession.client_id == client_id,
            VerificationSession.billed.is_(True),
            VerificationSession.billed_at >= window_start,
            VerificationSession.billed_at < window_end,
        )
        .group_by(VerificationSession.product_id, tier_name, credits)
        .order_by(VerificationSession.product_id, tier_name)
    )
    buckets = []
    for product_id, name, per_session, count in result.all():
        per_session = int(per_session or 0)
        count = int(count or 0)
        buckets.append(
            UsageBucket(
                product_id=product_id,
                tier_name=name,
                session_count=count,
                credits_per_session=per_session,
                total_credits=per_session * count,
            )
        )
    return buckets


async def get_unpaid_invoices(client_id: str, db: AsyncSession) -> List[UnpaidInvoice]:
    result = await db.execute(
        select(Invoice)
        .where(
            Invoice.client_id == client_id,
            Invoice.status.in_(UNPAID_STATUSES),
            Invoice.amount_paid_credits < Invoice.amount_due_credits,
        )
        .order_by(Invoice.period_end.asc())
    )
    return [
        UnpaidInvoice(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            unpaid_credits=int(invoice.amount_due_credits) - int(invoice.amount_paid_credits),
        )
        for invoice in result.scalars().all()
    ]


async def compute_invoice(
    client: Client,
    db: AsyncSession,
    *,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> InvoiceComputation:
    period_start, period_end = await calculate_billing_period(client, db, end_date=end_date, now=now)
    if period_start > period_end:
        raise NoBillablePeriodError(
            "No billable period available. Start date is after end date.",
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
        )

    usage = await query_usage_by_tier(client.id, period_start, period_end, db)
    unpaid = await get_unpaid_invoices(client.id, db)
    balance = await get_client_balance(client.id, db)

    amount_due_credits = max(0, -balance)
    amount_due_currency = credits_to_currency(amount_due_credits)
    tax_rate = Decimal(str(settings.INVOICE_TAX_RATE))
    tax_amount = compute_tax(amount_due_currency, tax_rate)
    return InvoiceComputation(
        period_start=period_start,
        period_end=period_end,
        due_date=local_today(now) + timedelta(days=settings.PAYMENT_TERMS_DAYS),
        usage=usage,
        unpaid=unpaid,
        total_usage_credits=sum(bucket.total_credits for bucket in usage),
        previous_balance_credits=sum(item.unpaid_credits for item in unpaid),
        credit_balance=balance,
        amount_due_credits=amount_due_credits,
        amount_due_currency=amount_due_currency,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total_with_tax=amount_due_currency + tax_amount,
    )


def _computation_line_items(computation: InvoiceComputation) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for bucket in computation.usage:
        items.append(
            {
                "line_type": "usage",
                "product_id": bucket.product_id,
                "tier_name": bucket.tier_name,
                "session_count": bucket.session_count,
                "credits_per_session": bucket.credits_per_session,
                "reference_invoice_id": None,
                "reference_invoice_number": None,
                "total_credits": bucket.total_credits,
                "total_currency": credits_to_currency(bucket.total_credits),
            }
        )
    for unpaid in computation.unpaid:
        items.append(
            {
                "line_type": "previous_balance",
                "product_id": None,
                "tier_name": None,
                "session_count": None,
                "credits_per_session": None,
                "reference_invoice_id": unpaid.id,
                "reference_invoice_number": unpaid.invoice_number,
                "total_credits": unpaid.unpaid_credits,
                "total_currency": credits_to_currency(unpaid.unpaid_credits),
            }
        )
    return items


def _serialize_line_item(item: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(item)
    data["total_currency"] = format_money(item["total_currency"])
    return data


async def preview_invoice(
    client_id: str,
    db: AsyncSession,
    *,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Same computation as generation; nothing is written."""
    client = await db.get(Client, client_id)
    if not client:
        raise NotFoundError("Client not found", client_id=client_id)
    computation = await compute_invoice(client, db, end_date=end_date, now=now)
    return {
        "client_id": client_id,
        "period_start": computation.period_start.isoformat(),
        "period_end": computation.period_end.isoformat(),
        "due_date": computation.due_date.isoformat(),
        "line_items": [_serialize_line_item(item) for item in _computation_line_items(computation)],
        "total_usage_credits": computation.total_usage_credits,
        "previous_balance_credits": computation.previous_balance_credits,
        "credit_balance": computation.credit_balance,
        "amount_due_credits": computation.amount_due_credits,
        "amount_due_currency": format_money(computation.amount_due_currency),
        "tax_rate": str(computation.tax_rate),
        "tax_amount": format_money(computation.tax_amount),
        "total_with_tax": format_money(computation.total_with_tax),
        "currency": settings.CURRENCY_CODE,
    }


async def next_document_number(
    prefix: str,
    client_code: str,
    column: Any,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> str:
    """``{prefix}-{CODE}-{YYYYMM}-{NNN}``. Call with the client lock held."""
    stem = f"{prefix}-{client_code}-{local_today(now).strftime('%Y%m')}-"
    result = await db.execute(select(column).where(column.like(f"{stem}%")))
    # Suffixes can exceed three digits.
    used = [int(suffix) for suffix in (str(value)[len(stem):] for value in result.scalars()) if suffix.isdigit()]
    return f"{stem}{max(used, default=0) + 1:03d}"


def serialize_invoice(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "client_id": invoice.client_id,
        "invoice_number": invoice.invoice_number,
        "period_start": invoice.period_start.isoformat() if invoice.period_start else None,
        "period_end": invoice.period_end.isoformat() if invoice.period_end else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "total_usage_credits": invoice.total_usage_credits,
        "previous_balance_credits": invoice.previous_balance_credits,
        "credit_balance_at_generation": invoice.credit_balance_at_generation,
        "amount_due_credits": invoice.amount_due_credits,
        "amount_due_currency": format_money(invoice.amount_due_currency),
        "tax_rate": str(invoice.tax_rate),
        "tax_amount": format_money(invoice.tax_amount),
        "total_with_tax": format_money(invoice.total_with_tax),
        "amount_paid_credits": invoice.amount_paid_credits,
        "amount_paid_currency": format_money(invoice.amount_paid_currency),
        "status": invoice.status,
        "superseded_by_invoice_id": invoice.superseded_by_invoice_id,
        "document_key": invoice.document_key,
        "generated_by": invoice.generated_by,
        "generated_at": invoice.generated_at.isoformat() if invoice.generated_at else None,
    }


def _document_data(client: Client, invoice: Invoice, line_items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "invoice_number": invoice.invoice_number,
        "client_name": client.name,
        "client_code": client.code,
        "period_start": invoice.period_start.isoformat(),
        "period_end": invoice.period_end.isoformat(),
        "due_date": invoice.due_date.isoformat(),
        "line_items": [_serialize_line_item(item) for item in line_items],
        "total_usage_credits": invoice.total_usage_credits,
        "previous_balance_credits": invoice.previous_balance_credits,
        "amount_due_credits": invoice.amount_due_credits,
        "amount_due_currency": format_money(invoice.amount_due_currency),
        "tax_rate": str(invoice.tax_rate),
        "tax_amount": format_money(invoice.tax_amount),
        "total_with_tax": format_money(invoice.total_with_tax),
    }


async def _delete_invoices(invoice_ids: List[str], db: AsyncSession) -> None:
    if not invoice_ids:
        return
    await db.execute(
        update(Invoice)
        .where(Invoice.superseded_by_invoice_id.in_(invoice_ids), Invoice.status == "superseded")
        .values(
            status=case((Invoice.amount_paid_credits > 0, "partial"), else_="generated"),
            superseded_by_invoice_id=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(InvoiceLineItem)
        .where(InvoiceLineItem.invoice_id.in_(invoice_ids))
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(Invoice).where(Invoice.id.in_(invoice_ids)).execution_options(synchronize_session=False)
    )


async def _render_invoice_document(client_id: str, invoice_id: str, data: Dict[str, Any]) -> str:
    return await asyncio.to_thread(store_invoice_document, client_id, invoice_id, data)


async def generate_invoice(
    client_id: str,
    db: AsyncSession,
    *,
    end_date: Optional[date] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Generate and render the next invoice for a client."""
    try:
        client = await lock_client(client_id, db)

        stale_before = utcnow() - timedelta(minutes=settings.PENDING_INVOICE_STALE_MINUTES)
        pending = (
            await db.execute(
                select(Invoice).where(Invoice.client_id == client_id, Invoice.status == "pending")
            )
        ).scalars().all()
        stale_ids = [inv.id for inv in pending if inv.generated_at and as_utc(inv.generated_at) < stale_before]
        if len(stale_ids) != len(pending):
            raise ConflictError("Invoice generation already in progress for this client", client_id=client_id)
        if stale_ids:
            logger.warning("Removing %s stale pending invoices for client %s", len(stale_ids), client_id)
            await _delete_invoices(stale_ids, db)

        computation = await compute_invoice(client, db, end_date=end_date, now=now)
        invoice_number = await next_document_number("INV", client.code, Invoice.invoice_number, db, now=now)
        invoice = Invoice(
            id=str(uuid.uuid4()),
            client_id=client_id,
            invoice_number=invoice_number,
            period_start=computation.period_start,
            period_end=computation.period_end,
            due_date=computation.due_date,
            total_usage_credits=computation.total_usage_credits,
            previous_balance_credits=computation.previous_balance_credits,
            credit_balance_at_generation=computation.credit_balance,
            amount_due_credits=computation.amount_due_credits,
            amount_due_currency=computation.amount_due_currency,
            tax_rate=computation.tax_rate,
            tax_amount=computation.tax_amount,
            total_with_tax=computation.total_with_tax,
            amount_paid_credits=0,
            amount_paid_currency=Decimal("0.00"),
            status="pending",
            generated_by=actor,
            generated_at=utcnow(),
        )
        line_items = _computation_line_items(computation)
        db.add(invoice)
        db.add_all(InvoiceLineItem(id=str(uuid.uuid4()), invoice_id=invoice.id, **item) for item in line_items)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    invoice_id = invoice.id
    carried_ids = [item.id for item in computation.unpaid]
    try:
        document_key = await _render_invoice_document(client_id, invoice_id, _document_data(client, invoice, line_items))
    except Exception as exc:
        logger.exception("Failed to render invoice %s, removing pending record", invoice_number)
        await _delete_invoices([invoice_id], db)
        await db.commit()
        raise UpstreamError("Failed to render invoice document", invoice_number=invoice_number) from exc

    try:
        await lock_client(client_id, db)
        invoice = (
            await db.execute(
                select(Invoice).where(Invoice.id == invoice_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if invoice is None or invoice.status != "pending":
            logger.warning("Pending invoice %s was removed while its document was rendering", invoice_number)
            raise ConflictError(
                "Invoice was removed before generation completed",
                invoice_id=invoice_id,
                invoice_number=invoice_number,
            )
        invoice.status = "generated"
        invoice.document_key = document_key
        invoice.generated_at = utcnow()
        if carried_ids:
            await db.execute(
                update(Invoice)
                .where(Invoice.id.in_(carried_ids), Invoice.status.in_(UNPAID_STATUSES))
                .values(status="superseded", superseded_by_invoice_id=invoice_id)
                .execution_options(synchronize_session=False)
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "invoice_generated client=%s number=%s period=%s..%s due_credits=%s carried=%s",
        client_id,
        invoice_number,
        computation.period_start,
        computation.period_end,
        computation.amount_due_credits,
        len(carried_ids),
    )
    data = serialize_invoice(invoice)
    data["line_items"] = [_serialize_line_item(item) for item in line_items]
    return data


async def _get_client_invoice(client_id: str, invoice_id: str, db: AsyncSession) -> Invoice:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.id == invoice_id, Invoice.client_id == client_id)
        .execution_options(populate_existing=True)
    )
    invoice = result.scalar_one_or_none()
    if not invoice:
        raise NotFoundError("Invoice not found", invoice_id=invoice_id)
    return invoice


async def void_invoice(client_id: str, invoice_id: str, db: AsyncSession, *, actor: Optional[str] = None) -> Dict[str, Any]:
    """Void an unpaid invoice and restore anything it superseded."""
    try:
        await lock_client(client_id, db)
        invoice = await _get_client_invoice(client_id, invoice_id, db)
        if invoice.status == "void":
            raise ConflictError("Invoice is already void", invoice_id=invoice_id)
        if invoice.status in ("superseded", "paid"):
            raise ConflictError(
                f"Cannot void a {invoice.status} invoice",
                invoice_id=invoice_id,
                status=invoice.status,
            )
        if int(invoice.amount_paid_credits or 0) > 0:
            raise ConflictError(
                "Cannot void an invoice with recorded payments",
                invoice_id=invoice_id,
                amount_paid_credits=invoice.amount_paid_credits,
            )

        superseded = (
            await db.execute(
                select(Invoice).where(
                    Invoice.superseded_by_invoice_id == invoice_id,
                    Invoice.status == "superseded",
                )
            )
        ).scalars().all()
        for previous in superseded:
            previous.status = "partial" if int(previous.amount_paid_credits or 0) > 0 else "generated"
            previous.superseded_by_invoice_id = None
        invoice.status = "void"
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "invoice_voided client=%s number=%s restored=%s actor=%s",
        client_id,
        invoice.invoice_number,
        len(superseded),
        actor,
    )
    data = serialize_invoice(invoice)
    data["restored_invoice_ids"] = [previous.id for previous in superseded]
    return data


async def find_stuck_invoices(client_id: str, db: AsyncSession) -> List[Invoice]:
    """Stale pending invoices, or generated ones that never got a document.

    Pending invoices younger than ``PENDING_INVOICE_STALE_MINUTES`` may still be
    rendering and are left alone.
    """
    stale_before = utcnow() - timedelta(minutes=settings.PENDING_INVOICE_STALE_MINUTES)
    result = await db.execute(
        select(Invoice)
        .where(
            Invoice.client_id == client_id,
            ((Invoice.status == "pending") & (Invoice.generated_at.is_(None) | (Invoice.generated_at < stale_before)))
            | ((Invoice.status == "generated") & ((Invoice.document_key.is_(None)) | (Invoice.document_key == ""))),
        )
        .order_by(Invoice.generated_at.asc())
    )
    return list(result.scalars().all())


async def cleanup_stuck_invoices(client_id: str, db: AsyncSession) -> Dict[str, Any]:
    try:
        await lock_client(client_id, db)
        stuck = await find_stuck_invoices(client_id, db)
        numbers = [invoice.invoice_number for invoice in stuck]
        await _delete_invoices([invoice.id for invoice in stuck], db)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if numbers:
        logger.warning("Deleted %s stuck invoices for client %s: %s", len(numbers), client_id, numbers)
    return {"deleted": len(numbers), "invoice_numbers": numbers}


async def list_invoices(client_id: str, db: AsyncSession, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query = select(Invoice).where(Invoice.client_id == client_id)
    if status:
        query = query.where(Invoice.status == status)
    result = await db.execute(query.order_by(Invoice.period_end.desc(), Invoice.generated_at.desc()))
    return [serialize_invoice(invoice) for invoice in result.scalars().all()]


async def get_invoice_detail(client_id: str, invoice_id: str, db: AsyncSession) -> Dict[str, Any]:
    from services.payments import serialize_payment

    invoice = await _get_client_invoice(client_id, invoice_id, db)
    items = (
        await db.execute(select(InvoiceLineItem).where(InvoiceLineItem.invoice_id == invoice_id))
    ).scalars().all()
    payments = (
        await db.execute(
            select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.payment_date.asc())
        )
    ).scalars().all()

    data = serialize_invoice(invoice)
    data["line_items"] = [
        {
            "id": item.id,
            "line_type": item.line_type,
            "product_id": item.product_id,
            "tier_name": item.tier_name,
            "session_count": item.session_count,
            "credits_per_session": item.credits_per_session,
            "reference_invoice_id": item.reference_invoice_id,
            "reference_invoice_number": item.reference_invoice_number,
            "total_credits": item.total_credits,
            "total_currency": format_money(item.total_currency),
        }
        for item in sorted(items, key=lambda row: (row.line_type != "usage", row.product_id or "", row.tier_name or ""))
    ]
    data["payments"] = [serialize_payment(payment) for payment in payments]
    data["document_url"] = document_url(invoice.document_key)
    return data


async def generate_all_monthly_invoices(*, now: Optional[datetime] = None, actor: Optional[str] = None) -> Dict[str, Any]:
    """Invoice every active client up to the end of the previous month."""
    end_date = last_day_of_previous_month(now)
    async with async_session_maker() as db:
        client_ids = list(
            (await db.execute(select(Client.id).where(Client.status == "active").order_by(Client.created_at))).scalars()
        )

    results: Dict[str, Any] = {
        "end_date": end_date.isoformat(),
        "success": 0,
        "failed": 0,
        "skipped": 0,
        "errors": [],
    }
    for client_id in client_ids:
        async with async_session_maker() as db:
            try:
                await generate_invoice(client_id, db, end_date=end_date, actor=actor, now=now)
                results["success"] += 1
            except NoBillablePeriodError:
                results["skipped"] += 1
            except BillingError as exc:
                results["failed"] += 1
                results["errors"].append({"client_id": client_id, "error": exc.message})
            except Exception as exc:
                logger.exception("Monthly invoice generation failed for client %s", client_id)
                results["failed"] += 1
                results["errors"].append({"client_id": client_id, "error": str(exc) or exc.__class__.__name__})

    logger.info(
        "monthly_invoices end=%s success=%s failed=%s skipped=%s",
        end_date,
        results["success"],
        results["failed"],
        results["skipped"],
    )
    return results
