"""CreditTransaction model: append-only ledger entries."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable credit ledger entry. Negative amounts are debits."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("reference_type", "reference_id", name="uq_credit_transactions_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=True)
    balance_after = Column(Integer, nullable=True)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="completed")
    description = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")
