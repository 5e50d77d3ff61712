"""Admin credit ledger and pricing tier router."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import admin_quota
from services.clients import get_client_or_404
from services.ledger import MANUAL_ENTRY_TYPES, get_ledger_summary, post_manual_entry
from services.pricing import delete_tiers, list_tiers, serialize_tier, set_tiers

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditEntryRequest(BaseModel):
    amount: int
    type: str = Field(description=f"One of: {', '.join(MANUAL_ENTRY_TYPES)}")
    product_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)


class PricingTierInput(BaseModel):
    tier_name: Optional[str] = None
    min_volume: int
    max_volume: Optional[int] = None
    credits_per_unit: int


class PricingTiersRequest(BaseModel):
    product_id: Optional[str] = None
    tiers: List[PricingTierInput]


@router.get("/{client_id}/credits")
async def credits_summary(
    client_id: str,
    product_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_client_or_404(client_id, db)
    return await get_ledger_summary(client_id, db, product_id=product_id, limit=limit, offset=offset)


@router.post("/{client_id}/credits")
async def add_credit_entry(
    client_id: str,
    request: CreditEntryRequest,
    auth: AuthContext = Depends(admin_quota("admin_credits", "ADMIN_CREDIT_RATE_LIMIT_PER_MINUTE")),
    db: AsyncSession = Depends(get_db),
):
    return await post_manual_entry(
        client_id,
        db,
        amount=request.amount,
        entry_type=request.type,
        actor=auth.actor,
        product_id=request.product_id,
        description=request.description,
    )


@router.get("/{client_id}/pricing")
async def get_pricing(
    client_id: str,
    product_id: Optional[str] = Query(default=None),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_client_or_404(client_id, db)
    resolved_product = product_id or settings.DEFAULT_PRODUCT_ID
    tiers = await list_tiers(client_id, resolved_product, db)
    return {
        "client_id": client_id,
        "product_id": resolved_product,
        "default_credits_per_unit": settings.DEFAULT_UNIT_COST_CREDITS,
        "tiers": [serialize_tier(tier) for tier in tiers],
    }


@router.put("/{client_id}/pricing")
async def replace_pricing(
    client_id: str,
    request: PricingTiersRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_client_or_404(client_id, db)
    resolved_product = request.product_id or settings.DEFAULT_PRODUCT_ID
    tiers = await set_tiers(
        client_id,
        resolved_product,
        [tier.model_dump() for tier in request.tiers],
        db,
    )
    logger.info("Pricing for client %s replaced by %s", client_id, auth.actor)
    return {
        "client_id": client_id,
        "product_id": resolved_product,
        "tiers": [serialize_tier(tier) for tier in tiers],
    }


@router.delete("/{client_id}/pricing")
async def remove_pricing(
    client_id: str,
    product_id: Optional[str] = Query(default=None),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_client_or_404(client_id, db)
    resolved_product = product_id or settings.DEFAULT_PRODUCT_ID
    deleted = await delete_tiers(client_id, resolved_product, db)
    return {"client_id": client_id, "product_id": resolved_product, "deleted": deleted}
