"""Per-product configuration for a client."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ClientProductConfig(Base):
    """Delivery endpoints and overdraft policy for one (client, product)."""

    __tablename__ = "client_product_configs"
    __table_args__ = (UniqueConstraint("client_id", "product_id", name="uq_client_product_config"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    webhook_url = Column(String, nullable=True)
    webhook_secret_encrypted = Column(String, nullable=True)  # Fernet
    success_url = Column(String, nullable=True)
    fail_url = Column(String, nullable=True)
    allow_overdraft = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client", back_populates="product_configs")
