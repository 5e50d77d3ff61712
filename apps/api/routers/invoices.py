"""Admin invoice and payment router."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import admin_quota
from services.errors import ValidationError
from services.invoices import (
    cleanup_stuck_invoices,
    find_stuck_invoices,
    generate_invoice,
    get_invoice_detail,
    list_invoices,
    preview_invoice,
    serialize_invoice,
    void_invoice,
)
from services.payments import (
    get_payment_detail,
    list_advance_payments,
    list_payments,
    record_advance_payment,
    record_payment,
)

router = APIRouter()


class GenerateInvoiceRequest(BaseModel):
    end_date: Optional[date] = None


class InvoiceUpdateRequest(BaseModel):
    status: str


class RecordPaymentRequest(BaseModel):
    amount_credits: int
    payment_date: date
    payment_method: Optional[str] = Field(default=None, max_length=64)
    payment_reference: Optional[str] = Field(default=None, max_length=128)
    notes: Optional[str] = Field(default=None, max_length=1000)


@router.get("/{client_id}/invoices")
async def get_invoices(
    client_id: str,
    status: Optional[str] = Query(default=None),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"client_id": client_id, "invoices": await list_invoices(client_id, db, status=status)}


@router.post("/{client_id}/invoices", status_code=201)
async def post_invoice(
    client_id: str,
    request: Optional[GenerateInvoiceRequest] = None,
    auth: AuthContext = Depends(admin_quota("invoice_generate", "INVOICE_GENERATE_RATE_LIMIT_PER_MINUTE")),
    db: AsyncSession = Depends(get_db),
):
    end_date = request.end_date if request else None
    return await generate_invoice(client_id, db, end_date=end_date, actor=auth.actor)


@router.get("/{client_id}/invoices/preview")
async def get_invoice_preview(
    client_id: str,
    end_date: Optional[date] = Query(default=None),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await preview_invoice(client_id, db, end_date=end_date)


@router.get("/{client_id}/invoices/cleanup")
async def get_stuck_invoices(
    client_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    stuck = await find_stuck_invoices(client_id, db)
    return {"count": len(stuck), "invoices": [serialize_invoice(invoice) for invoice in stuck]}


@router.delete("/{client_id}/invoices/cleanup")
async def delete_stuck_invoices(
    client_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await cleanup_stuck_invoices(client_id, db)


@router.get("/{client_id}/invoices/{invoice_id}")
async def get_invoice(
    client_id: str,
    invoice_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_invoice_detail(client_id, invoice_id, db)


@router.patch("/{client_id}/invoices/{invoice_id}")
async def patch_invoice(
    client_id: str,
    invoice_id: str,
    request: InvoiceUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if request.status != "void":
        raise ValidationError("Only 'void' status update is allowed", status=request.status)
    return await void_invoice(client_id, invoice_id, db, actor=auth.actor)


@router.get("/{client_id}/invoices/{invoice_id}/payments")
async def get_invoice_payments(
    client_id: str,
    invoice_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"invoice_id": invoice_id, "payments": await list_payments(client_id, db, invoice_id=invoice_id)}


@router.post("/{client_id}/invoices/{invoice_id}/payments", status_code=201)
async def post_invoice_payment(
    client_id: str,
    invoice_id: str,
    request: RecordPaymentRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await record_payment(
        client_id,
        invoice_id,
        db,
        amount_credits=request.amount_credits,
        payment_date=request.payment_date,
        actor=auth.actor,
        payment_method=request.payment_method,
        payment_reference=request.payment_reference,
        notes=request.notes,
    )


@router.get("/{client_id}/payments")
async def get_client_payments(
    client_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"client_id": client_id, "payments": await list_payments(client_id, db)}


@router.get("/{client_id}/payments/{payment_id}")
async def get_payment(
    client_id: str,
    payment_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_payment_detail(client_id, payment_id, db)


@router.get("/{client_id}/advance-payments")
async def get_advance_payments(
    client_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"client_id": client_id, "payments": await list_advance_payments(client_id, db)}


@router.post("/{client_id}/advance-payments", status_code=201)
async def post_advance_payment(
    client_id: str,
    request: RecordPaymentRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await record_advance_payment(
        client_id,
        db,
        amount_credits=request.amount_credits,
        payment_date=request.payment_date,
        actor=auth.actor,
        payment_method=request.payment_method,
        payment_reference=request.payment_reference,
        notes=request.notes,
    )
