"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
from .generation_history import GenerationHistory
from .payment_order import PaymentOrder
