"""Client model for billed API customers."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Client(Base):
    """B2B customer whose verification usage is metered and invoiced.

    The client row is also the lock target that serializes every credit
    mutation for the client.
    """

    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default="active")  # active, suspended
    client_source = Column(String, nullable=False, default="api")  # api, tenant
    tenant_id = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    product_configs = relationship("ClientProductConfig", back_populates="client", cascade="all, delete-orphan")
    api_keys = relationship("ClientApiKey", back_populates="client", cascade="all, delete-orphan")
    credit_entries = relationship("CreditLedger", back_populates="client")
    sessions = relationship("VerificationSession", back_populates="client")
    invoices = relationship("Invoice", back_populates="client")
