"""Account model holding the authoritative credit balance."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Signed-in user with plan tier and credit counters.

    ``remaining_credits`` is only ever written by the ledger's conditional
    update or a credit grant; ``version`` is bumped on each of those writes so
    clients can order pushed rows.
    """

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    plan = Column(String, nullable=False, default="free", index=True)
    total_credits = Column(Integer, nullable=False, default=0)
    used_credits = Column(Integer, nullable=False, default=0)
    remaining_credits = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    reset_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    transactions = relationship("CreditTransaction", back_populates="account", cascade="all, delete-orphan")
    generations = relationship("GenerationHistory", back_populates="account", cascade="all, delete-orphan")
    payment_orders = relationship("PaymentOrder", back_populates="account", cascade="all, delete-orphan")
