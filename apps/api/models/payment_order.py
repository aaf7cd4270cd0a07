"""Payment order model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class PaymentOrder(Base):
    """Checkout order for a plan upgrade or a credit top-up."""

    __tablename__ = "payment_orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    order_id = Column(String, unique=True, nullable=False, index=True)
    kind = Column(String, nullable=False)  # "plan" or "topup"
    item_id = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="INR")
    status = Column(String, nullable=False, default="pending", index=True)
    payment_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="payment_orders")
