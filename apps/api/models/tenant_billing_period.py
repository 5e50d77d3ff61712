"""Billing period bookkeeping for tenant-style clients."""

import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class TenantBillingPeriod(Base):
    """Manually settled billing period, reported to the tenant by webhook."""

    __tablename__ = "tenant_billing_periods"
    __table_args__ = (UniqueConstraint("client_id", "period_start", name="uq_tenant_billing_period_start"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    payment_status = Column(String, nullable=False, default="unpaid")
    paid_at = Column(DateTime(timezone=True), nullable=True)
    paid_amount = Column(Numeric(12, 2), nullable=True)
    recorded_by = Column(String, nullable=True)
    webhook_delivered = Column(Boolean, nullable=False, default=False)
    webhook_last_error = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
