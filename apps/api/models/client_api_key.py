"""Hashed API keys used by clients to create verification sessions."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ClientApiKey(Base):
    """API key record. Only the SHA-256 hash of the key is stored."""

    __tablename__ = "client_api_keys"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    api_key_hash = Column(String, nullable=False, unique=True, index=True)
    key_prefix = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active, revoked
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    client = relationship("Client", back_populates="api_keys")
