"""Manual payment recording against invoices, and advance payments."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.client import Client
from models.invoice import Invoice
from models.payment import Payment
from services.clients import get_client_or_404
from services.documents import store_receipt_document
from services.errors import ConflictError, InvalidAmountError, NotFoundError
from services.invoices import format_money, credits_to_currency, next_document_number
from services.ledger import append_entry, lock_client
from services.storage import document_url

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = ("generated", "partial")


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "client_id": payment.client_id,
        "receipt_number": payment.receipt_number,
        "amount_credits": payment.amount_credits,
        "amount_currency": format_money(payment.amount_currency),
        "payment_date": payment.payment_date.isoformat() if payment.payment_date else None,
        "payment_method": payment.payment_method,
        "payment_reference": payment.payment_reference,
        "receipt_document_key": payment.receipt_document_key,
        "recorded_by": payment.recorded_by,
        "notes": payment.notes,
    }


def _require_positive(amount_credits: int) -> None:
    if isinstance(amount_credits, bool) or int(amount_credits) <= 0:
        raise InvalidAmountError("amount_credits must be a positive integer", amount_credits=amount_credits)


async def _store_receipt(
    payment: Payment,
    client: Client,
    invoice_number: Optional[str],
    db: AsyncSession,
) -> Optional[str]:
    """Render the receipt after the payment committed; failures leave the key unset."""
    receipt_data = {
        "receipt_number": payment.receipt_number,
        "invoice_number": invoice_number or "Advance payment",
        "client_name": client.name,
        "client_code": client.code,
        "payment_date": payment.payment_date.isoformat(),
        "amount_credits": payment.amount_credits,
        "amount_currency": format_money(payment.amount_currency),
        "payment_method": payment.payment_method,
        "payment_reference": payment.payment_reference,
    }
    try:
        key = await asyncio.to_thread(store_receipt_document, payment.client_id, payment.id, receipt_data)
        payment.receipt_document_key = key
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to render receipt %s; payment is recorded", payment.receipt_number)
        return None
    return key


async def record_payment(
    client_id: str,
    invoice_id: str,
    db: AsyncSession,
    *,
    amount_credits: int,
    payment_date: date,
    actor: str,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply a payment, capped at the invoice's remaining due, and credit the ledger."""
    _require_positive(amount_credits)

    try:
        client = await lock_client(client_id, db)
        invoice = (
            await db.execute(
                select(Invoice)
                .where(Invoice.id == invoice_id, Invoice.client_id == client_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if not invoice:
            raise NotFoundError("Invoice not found", invoice_id=invoice_id)
        if invoice.status not in PAYABLE_STATUSES:
            raise ConflictError(
                f"Cannot record payment for invoice with status: {invoice.status}",
                invoice_id=invoice_id,
                status=invoice.status,
            )

        remaining = int(invoice.amount_due_credits) - int(invoice.amount_paid_credits)
        if remaining <= 0:
            raise ConflictError("Invoice has no remaining amount due", invoice_id=invoice_id)
        applied = min(int(amount_credits), remaining)

        receipt_number = await next_document_number("RCP", client.code, Payment.receipt_number, db)
        payment = Payment(
            id=str(uuid.uuid4()),
            invoice_id=invoice_id,
            client_id=client_id,
            receipt_number=receipt_number,
            amount_credits=applied,
            amount_currency=credits_to_currency(applied),
            payment_date=payment_date,
            payment_method=payment_method,
            payment_reference=payment_reference,
            recorded_by=actor,
            notes=notes,
        )
        db.add(payment)

        invoice.amount_paid_credits = int(invoice.amount_paid_credits) + applied
        invoice.amount_paid_currency = credits_to_currency(invoice.amount_paid_credits)
        invoice.status = "paid" if invoice.amount_paid_credits >= invoice.amount_due_credits else "partial"

        entry = await append_entry(
            client_id,
            settings.DEFAULT_PRODUCT_ID,
            db,
            amount=applied,
            entry_type="topup",
            reference_id=payment.id,
            description=f"Payment {receipt_number} for {invoice.invoice_number}",
            actor=actor,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "payment_recorded client=%s invoice=%s receipt=%s applied=%s requested=%s status=%s",
        client_id,
        invoice.invoice_number,
        receipt_number,
        applied,
        amount_credits,
        invoice.status,
    )

    data = serialize_payment(payment)
    data["invoice_status"] = invoice.status
    data["invoice_amount_paid_credits"] = invoice.amount_paid_credits
    data["capped"] = applied < int(amount_credits)
    data["balance_after"] = entry.balance_after
    data["receipt_document_key"] = await _store_receipt(payment, client, invoice.invoice_number, db)
    return data


async def list_payments(
    client_id: str,
    db: AsyncSession,
    *,
    invoice_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query = select(Payment).where(Payment.client_id == client_id)
    if invoice_id:
        invoice = (
            await db.execute(select(Invoice.id).where(Invoice.id == invoice_id, Invoice.client_id == client_id))
        ).scalar_one_or_none()
        if not invoice:
            raise NotFoundError("Invoice not found", invoice_id=invoice_id)
        query = query.where(Payment.invoice_id == invoice_id)
    result = await db.execute(query.order_by(Payment.payment_date.desc(), Payment.created_at.desc()))
    return [serialize_payment(payment) for payment in result.scalars().all()]


async def record_advance_payment(
    client_id: str,
    db: AsyncSession,
    *,
    amount_credits: int,
    payment_date: date,
    actor: str,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Record money received ahead of any invoice as a receipted credit top-up."""
    _require_positive(amount_credits)
    amount = int(amount_credits)

    try:
        client = await lock_client(client_id, db)
        receipt_number = await next_document_number("RCP", client.code, Payment.receipt_number, db)
        payment = Payment(
            id=str(uuid.uuid4()),
            invoice_id=None,
            client_id=client_id,
            receipt_number=receipt_number,
            amount_credits=amount,
            amount_currency=credits_to_currency(amount),
            payment_date=payment_date,
            payment_method=payment_method,
            payment_reference=payment_reference,
            recorded_by=actor,
            notes=notes,
        )
        db.add(payment)
        entry = await append_entry(
            client_id,
            settings.DEFAULT_PRODUCT_ID,
            db,
            amount=amount,
            entry_type="topup",
            reference_id=payment.id,
            description=f"Advance payment {receipt_number}",
            actor=actor,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("advance_payment_recorded client=%s receipt=%s amount=%s", client_id, receipt_number, amount)

    data = serialize_payment(payment)
    data["balance_after"] = entry.balance_after
    data["receipt_document_key"] = await _store_receipt(payment, client, None, db)
    return data


async def list_advance_payments(client_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    await get_client_or_404(client_id, db)
    result = await db.execute(
        select(Payment)
        .where(Payment.client_id == client_id, Payment.invoice_id.is_(None))
        .order_by(Payment.payment_date.desc(), Payment.created_at.desc())
    )
    return [serialize_payment(payment) for payment in result.scalars().all()]


async def get_payment_detail(client_id: str, payment_id: str, db: AsyncSession) -> Dict[str, Any]:
    row = (
        await db.execute(
            select(Payment, Invoice.invoice_number)
            .outerjoin(Invoice, Invoice.id == Payment.invoice_id)
            .where(Payment.id == payment_id, Payment.client_id == client_id)
        )
    ).first()
    if row is None:
        raise NotFoundError("Payment not found", payment_id=payment_id)
    payment, invoice_number = row
    data = serialize_payment(payment)
    data["invoice_number"] = invoice_number
    data["receipt_url"] = document_url(payment.receipt_document_key)
    return data
