"""Payment model."""

import uuid

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Payment(Base):
    """Manually recorded payment; advance payments carry no invoice."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(String, ForeignKey("invoices.id"), nullable=True, index=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    receipt_number = Column(String, nullable=False, unique=True, index=True)
    amount_credits = Column(Integer, nullable=False)
    amount_currency = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    receipt_document_key = Column(String, nullable=True)
    recorded_by = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    invoice = relationship("Invoice", back_populates="payments")
