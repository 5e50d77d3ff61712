"""Inbound webhook delivery log used for idempotency."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from database import Base


class WebhookLog(Base):
    """One row per distinct inbound payload hash."""

    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    payload_hash = Column(String, nullable=False, unique=True)
    session_id = Column(String, ForeignKey("verification_sessions.id"), nullable=True, index=True)
    source = Column(String, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
