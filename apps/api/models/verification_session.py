"""Verification session model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class VerificationSession(Base):
    """One billable identity verification attempt."""

    __tablename__ = "verification_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    ref_id = Column(String(32), nullable=False, unique=True, index=True)
    onboarding_id = Column(String, nullable=True)
    onboarding_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, expired
    result = Column(String, nullable=True)  # approved, rejected
    reject_message = Column(String, nullable=True)
    document_name = Column(String, nullable=True)
    document_number = Column(String, nullable=True)
    document_type = Column(String, nullable=False, default="1")
    front_document_key = Column(String, nullable=True)
    back_document_key = Column(String, nullable=True)
    face_image_key = Column(String, nullable=True)
    best_frame_key = Column(String, nullable=True)
    provider_response = Column(JSON, nullable=True)

    billed = Column(Boolean, nullable=False, default=False)
    billed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    billed_credits = Column(Integer, nullable=True)
    billing_tier_name = Column(String, nullable=True)
    billing_sequence = Column(Integer, nullable=True)

    webhook_url = Column(String, nullable=True)
    webhook_delivered = Column(Boolean, nullable=False, default=False)
    webhook_delivered_at = Column(DateTime(timezone=True), nullable=True)
    webhook_attempts = Column(Integer, nullable=False, default=0)
    webhook_last_error = Column(String, nullable=True)

    success_url = Column(String, nullable=True)
    fail_url = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client", back_populates="sessions")
