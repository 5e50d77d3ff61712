"""Volume-tiered per-unit pricing."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.pricing_tier import PricingTier
from models.verification_session import VerificationSession
from services.billing_time import month_bounds_utc
from services.errors import InvalidTierDefinitionError

logger = logging.getLogger(__name__)

DEFAULT_TIER_NAME = "Default"


@dataclass(frozen=True)
class ResolvedTier:
    tier_name: str
    credits_per_unit: int
    min_volume: int = 1
    max_volume: Optional[int] = None
    is_default: bool = False


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_tiers(tiers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalize a replacement tier set, raising on any invalid definition.

    Tiers must start at volume 1 and be contiguous and non-overlapping.
    Only the last tier (by volume) may be unbounded.
    """
    if not tiers:
        raise InvalidTierDefinitionError("At least one pricing tier is required")

    normalized: List[Dict[str, Any]] = []
    for index, tier in enumerate(tiers):
        min_volume = tier.get("min_volume")
        max_volume = tier.get("max_volume")
        credits = tier.get("credits_per_unit")
        if not _is_int(min_volume) or min_volume < 1:
            raise InvalidTierDefinitionError(
                "min_volume must be an integer of at least 1 (volumes are 1-indexed)",
                tier_index=index,
            )
        if max_volume is not None and (not _is_int(max_volume) or max_volume < min_volume):
            raise InvalidTierDefinitionError(
                "max_volume must be null or an integer >= min_volume",
                tier_index=index,
            )
        if not _is_int(credits) or credits < 1:
            raise InvalidTierDefinitionError(
                "credits_per_unit must be a positive integer",
                tier_index=index,
            )
        normalized.append(
            {
                "tier_name": (tier.get("tier_name") or "").strip() or f"Tier {index + 1}",
                "min_volume": min_volume,
                "max_volume": max_volume,
                "credits_per_unit": credits,
            }
        )

    ordered = sorted(normalized, key=lambda item: item["min_volume"])
    if ordered[0]["min_volume"] != 1:
        raise InvalidTierDefinitionError("The first tier must start at volume 1")
    for previous, current in zip(ordered, ordered[1:]):
        if previous["max_volume"] is None:
            raise InvalidTierDefinitionError(
                f"Tier '{previous['tier_name']}' is unbounded but is followed by '{current['tier_name']}'"
            )
        if current["min_volume"] <= previous["max_volume"]:
            raise InvalidTierDefinitionError(
                f"Tiers '{previous['tier_name']}' and '{current['tier_name']}' overlap"
            )
        if current["min_volume"] != previous["max_volume"] + 1:
            raise InvalidTierDefinitionError(
                f"Gap between tiers '{previous['tier_name']}' and '{current['tier_name']}'"
            )
    return ordered


def serialize_tier(tier: PricingTier) -> Dict[str, Any]:
    return {
        "id": tier.id,
        "tier_name": tier.tier_name,
        "min_volume": tier.min_volume,
        "max_volume": tier.max_volume,
        "credits_per_unit": tier.credits_per_unit,
    }


async def list_tiers(client_id: str, product_id: str, db: AsyncSession) -> List[PricingTier]:
    result = await db.execute(
        select(PricingTier)
        .where(PricingTier.client_id == client_id, PricingTier.product_id == product_id)
        .order_by(PricingTier.min_volume.asc())
    )
    return list(result.scalars().all())


async def set_tiers(
    client_id: str,
    product_id: str,
    tiers: List[Dict[str, Any]],
    db: AsyncSession,
) -> List[PricingTier]:
    """Atomically replace the whole tier set for a (client, product)."""
    ordered = validate_tiers(tiers)
    try:
        await db.execute(
            delete(PricingTier).where(
                PricingTier.client_id == client_id,
                PricingTier.product_id == product_id,
            )
        )
        rows = [
            PricingTier(
                id=str(uuid.uuid4()),
                client_id=client_id,
                product_id=product_id,
                **tier,
            )
            for tier in ordered
        ]
        db.add_all(rows)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("pricing_tiers_replaced client=%s product=%s count=%s", client_id, product_id, len(rows))
    return rows


async def delete_tiers(client_id: str, product_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        delete(PricingTier).where(
            PricingTier.client_id == client_id,
            PricingTier.product_id == product_id,
        )
    )
    await db.commit()
    return int(result.rowcount or 0)


async def resolve_tier(
    client_id: str,
    product_id: str,
    current_month_usage: int,
    db: AsyncSession,
) -> ResolvedTier:
    """Tier applying to the next unit, i.e. position ``current_month_usage + 1``."""
    position = max(int(current_month_usage), 0) + 1
    result = await db.execute(
        select(PricingTier)
        .where(
            PricingTier.client_id == client_id,
            PricingTier.product_id == product_id,
            PricingTier.min_volume <= position,
            (PricingTier.max_volume.is_(None)) | (PricingTier.max_volume >= position),
        )
        .order_by(PricingTier.min_volume.desc())
        .limit(1)
    )
    tier = result.scalar_one_or_none()
    if tier is None:
        return ResolvedTier(
            tier_name=DEFAULT_TIER_NAME,
            credits_per_unit=max(int(settings.DEFAULT_UNIT_COST_CREDITS), 1),
            is_default=True,
        )
    return ResolvedTier(
        tier_name=tier.tier_name,
        credits_per_unit=tier.credits_per_unit,
        min_volume=tier.min_volume,
        max_volume=tier.max_volume,
    )


async def resolve_unit_cost(
    client_id: str,
    product_id: str,
    current_month_usage: int,
    db: AsyncSession,
) -> int:
    tier = await resolve_tier(client_id, product_id, current_month_usage, db)
    return tier.credits_per_unit


async def count_billed_sessions_this_month(
    client_id: str,
    db: AsyncSession,
    *,
    exclude_session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Billed sessions whose billed_at falls in the current billing month."""
    month_start, month_end = month_bounds_utc(now)
    query = select(func.count(VerificationSession.id)).where(
        VerificationSession.client_id == client_id,
        VerificationSession.billed.is_(True),
        VerificationSession.billed_at >= month_start,
        VerificationSession.billed_at < month_end,
    )
    if exclude_session_id:
        query = query.where(VerificationSession.id != exclude_session_id)
    result = await db.execute(query)
    return int(result.scalar() or 0)
