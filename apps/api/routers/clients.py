"""Admin client management router."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.api_keys import create_api_key, revoke_api_key
from services.clients import create_client, get_client_detail, list_clients, update_product_config, usage_report
from services.sessions import list_sessions
from services.webhooks import list_tenant_billing_periods, mark_tenant_period_paid

router = APIRouter()
report_router = APIRouter()


class CreateClientRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1, max_length=32)
    contact_email: Optional[str] = None
    client_source: str = "api"
    tenant_id: Optional[str] = None
    allow_overdraft: bool = False
    webhook_url: Optional[str] = None
    initial_credits: int = Field(default=0, ge=0)
    initial_credits_type: str = "included"


class ProductConfigUpdateRequest(BaseModel):
    product_id: Optional[str] = None
    enabled: Optional[bool] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    allow_overdraft: Optional[bool] = None


class CreateApiKeyRequest(BaseModel):
    product_id: Optional[str] = None
    environment: str = "live"


class MarkPaidRequest(BaseModel):
    period_start: date
    period_end: date
    paid_amount: Optional[Decimal] = Field(default=None, ge=0)


@router.get("")
async def get_clients(
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_clients(db)


@router.post("", status_code=201)
async def post_client(
    request: CreateClientRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await create_client(
        db,
        name=request.name,
        code=request.code,
        actor=auth.actor,
        contact_email=request.contact_email,
        client_source=request.client_source,
        tenant_id=request.tenant_id,
        allow_overdraft=request.allow_overdraft,
        webhook_url=request.webhook_url,
        initial_credits=request.initial_credits,
        initial_credits_type=request.initial_credits_type,
    )


@router.get("/{client_id}")
async def get_client(
    client_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_client_detail(client_id, db)


@router.patch("/{client_id}/config")
async def patch_client_config(
    client_id: str,
    request: ProductConfigUpdateRequest,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    changes = request.model_dump(exclude_unset=True, exclude={"product_id"})
    return await update_product_config(client_id, db, product_id=request.product_id, changes=changes)


@router.post("/{client_id}/api-keys", status_code=201)
async def post_api_key(
    client_id: str,
    request: CreateApiKeyRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await create_api_key(
        client_id,
        request.product_id or settings.DEFAULT_PRODUCT_ID,
        db,
        actor=auth.actor,
        environment=request.environment,
    )


@router.delete("/{client_id}/api-keys/{key_id}")
async def delete_api_key(
    client_id: str,
    key_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await revoke_api_key(client_id, key_id, db)


@router.get("/{client_id}/sessions")
async def get_client_sessions(
    client_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_sessions(client_id, db, status=status, limit=limit, offset=offset)


@router.post("/{client_id}/mark-paid")
async def post_mark_paid(
    client_id: str,
    request: MarkPaidRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await mark_tenant_period_paid(
        client_id,
        db,
        period_start=request.period_start,
        period_end=request.period_end,
        paid_amount=request.paid_amount,
        actor=auth.actor,
    )


@router.get("/{client_id}/billing-periods")
async def get_billing_periods(
    client_id: str,
    limit: int = Query(default=24, ge=1, le=100),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"client_id": client_id, "periods": await list_tenant_billing_periods(client_id, db, limit=limit)}


@report_router.get("/usage")
async def get_usage_report(
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await usage_report(db)
