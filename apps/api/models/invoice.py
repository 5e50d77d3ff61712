"""Invoice and invoice line item models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Invoice(Base):
    """Periodic invoice for a client.

    Status flow: pending -> generated -> partial -> paid. ``superseded``
    marks an unpaid invoice whose balance was carried into a later one;
    ``void`` removes an invoice from billing entirely.
    """

    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    invoice_number = Column(String, nullable=False, unique=True, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    total_usage_credits = Column(Integer, nullable=False, default=0)
    previous_balance_credits = Column(Integer, nullable=False, default=0)
    credit_balance_at_generation = Column(Integer, nullable=False, default=0)
    amount_due_credits = Column(Integer, nullable=False, default=0)
    amount_due_currency = Column(Numeric(12, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(5, 4), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_with_tax = Column(Numeric(12, 2), nullable=False, default=0)
    amount_paid_credits = Column(Integer, nullable=False, default=0)
    amount_paid_currency = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)
    superseded_by_invoice_id = Column(String, ForeignKey("invoices.id"), nullable=True)
    document_key = Column(String, nullable=True)
    generated_by = Column(String, nullable=True)
    generated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client", back_populates="invoices")
    line_items = relationship("InvoiceLineItem", back_populates="invoice", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="invoice")


class InvoiceLineItem(Base):
    """Usage bucket or carried-over balance on an invoice."""

    __tablename__ = "invoice_line_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(String, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    line_type = Column(String, nullable=False)  # usage, previous_balance
    product_id = Column(String, nullable=True)
    tier_name = Column(String, nullable=True)
    session_count = Column(Integer, nullable=True)
    credits_per_session = Column(Integer, nullable=True)
    reference_invoice_id = Column(String, nullable=True)
    reference_invoice_number = Column(String, nullable=True)
    total_credits = Column(Integer, nullable=False, default=0)
    total_currency = Column(Numeric(12, 2), nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="line_items")
