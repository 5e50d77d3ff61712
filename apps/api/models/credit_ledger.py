"""CreditLedger model for metered usage accounting."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


LEDGER_ENTRY_TYPES = ("topup", "usage", "adjustment", "refund", "included")


class CreditLedger(Base):
    """Immutable credit ledger entry.

    ``balance_after`` is the running balance of the (client, product) pair
    right after this entry was written.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_client_product_created", "client_id", "product_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    entry_type = Column(String, nullable=False)
    reference_id = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    client = relationship("Client", back_populates="credit_entries")
