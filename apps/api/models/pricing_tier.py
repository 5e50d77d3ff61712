"""Volume pricing tiers."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class PricingTier(Base):
    """Credits charged per unit for a 1-indexed monthly volume range."""

    __tablename__ = "pricing_tiers"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    tier_name = Column(String, nullable=False)
    min_volume = Column(Integer, nullable=False)
    max_volume = Column(Integer, nullable=True)  # NULL = unbounded
    credits_per_unit = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
