"""Credit ledger: balance pre-checks, atomic debits and credit grants."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.account import Account
from models.credit_transaction import CreditTransaction
from services.errors import AccountNotFound, StoreUnavailable

logger = logging.getLogger(__name__)

STORE_ERRORS = (OperationalError, InterfaceError, OSError)

REFERENCE_GENERATION = "generation"


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    remaining: int


@dataclass(frozen=True)
class DebitResult:
    success: bool
    new_balance: int
    error_kind: Optional[str] = None
    transaction_id: Optional[str] = None
    already_billed: bool = False


@dataclass(frozen=True)
class GrantResult:
    new_balance: int
    transaction_id: Optional[str]
    created: bool


def serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "plan": account.plan,
        "total_credits": int(account.total_credits or 0),
        "used_credits": int(account.used_credits or 0),
        "remaining_credits": max(int(account.remaining_credits or 0), 0),
        "reset_date": account.reset_date.isoformat() if account.reset_date else None,
        "version": int(account.version or 0),
    }


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "date": entry.created_at.isoformat() if entry.created_at else None,
        "type": entry.type,
        "amount": entry.amount,
        "status": entry.status,
        "description": entry.description,
        "balance_after": entry.balance_after,
        "reference_id": entry.reference_id,
    }


class CreditLedger:
    """Authoritative account balances.

    Every mutation is a single transaction against the store: the balance row
    is changed by one conditional UPDATE and the matching ledger entry is
    inserted before commit. No application-level locks are taken.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def get_account(self, account_id: str) -> Optional[Account]:
        try:
            async with self._session_maker() as db:
                return await db.get(Account, account_id)
        except STORE_ERRORS as exc:
            raise StoreUnavailable() from exc

    async def ensure_account(
        self,
        account_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Account:
        """Return the account, creating a free-tier one on first access."""
        try:
            async with self._session_maker() as db:
                account = await db.get(Account, account_id)
                if account:
                    return account

                free_credits = max(int(settings.FREE_TIER_CREDITS), 0)
                account = Account(
                    id=account_id,
                    email=email,
                    name=name or (email.split("@")[0] if email else None),
                    plan="free",
                    total_credits=free_credits,
                    used_credits=0,
                    remaining_credits=free_credits,
                    version=1,
                    reset_date=datetime.now(timezone.utc) + timedelta(days=int(settings.CREDIT_RESET_DAYS)),
                )
                db.add(account)
                db.add(
                    CreditTransaction(
                        account_id=account_id,
                        amount=free_credits,
                        balance_before=0,
                        balance_after=free_credits,
                        type="grant",
                        status="completed",
                        description="Free tier credits",
                        reference_type="signup",
                        reference_id=account_id,
                    )
                )
                try:
                    await db.commit()
                except IntegrityError:
                    # Concurrent first access created it already.
                    await db.rollback()
                    account = await db.get(Account, account_id)
                    if account is None:
                        raise
                return account
        except STORE_ERRORS as exc:
            raise StoreUnavailable() from exc

    async def check_balance(self, account_id: str, cost: int) -> BalanceCheck:
        """Non-authoritative pre-check; reserves nothing."""
        account = await self.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found.")
        remaining = max(int(account.remaining_credits or 0), 0)
        return BalanceCheck(sufficient=remaining >= int(cost), remaining=remaining)

    async def debit(
        self,
        account_id: str,
        amount: int,
        description: str,
        reference_id: str,
        reference_type: str = REFERENCE_GENERATION,
    ) -> DebitResult:
        """Re-verify sufficiency and decrement in one indivisible step.

        A reference that was already billed returns the original entry with
        ``already_billed=True`` and leaves the balance untouched.
        """
        debit_cost = int(amount)
        if debit_cost <= 0:
            raise ValueError("Debit amount must be positive.")

        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    update(Account)
                    .where(Account.id == account_id, Account.remaining_credits >= debit_cost)
                    .values(
                        remaining_credits=Account.remaining_credits - debit_cost,
                        used_credits=Account.used_credits + debit_cost,
                        version=Account.version + 1,
                    )
                    .returning(Account.remaining_credits)
                    .execution_options(synchronize_session=False)
                )
                row = result.first()
                if row is None:
                    await db.rollback()
                    existing = await self._find_reference(db, reference_type, reference_id)
                    if existing is not None:
                        return self._already_billed(existing)
                    account = await db.get(Account, account_id)
                    if account is None:
                        raise AccountNotFound(f"Account {account_id} not found.")
                    logger.info(
                        "Debit of %s refused for %s: balance %s (ref=%s)",
                        debit_cost,
                        account_id,
                        account.remaining_credits,
                        reference_id,
                    )
                    return DebitResult(
                        success=False,
                        new_balance=max(int(account.remaining_credits or 0), 0),
                        error_kind="InsufficientFunds",
                    )

                new_balance = int(row[0])
                entry = CreditTransaction(
                    account_id=account_id,
                    amount=-debit_cost,
                    balance_before=new_balance + debit_cost,
                    balance_after=new_balance,
                    type=reference_type,
                    status="completed",
                    description=description,
                    reference_type=reference_type,
                    reference_id=reference_id,
                )
                db.add(entry)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    existing = await self._find_reference(db, reference_type, reference_id)
                    if existing is None:
                        raise
                    return self._already_billed(existing)
                return DebitResult(success=True, new_balance=new_balance, transaction_id=entry.id)
        except STORE_ERRORS as exc:
            logger.error("Ledger store unavailable during debit for %s (ref=%s): %s", account_id, reference_id, exc)
            raise StoreUnavailable() from exc

    async def grant(
        self,
        account_id: str,
        amount: int,
        *,
        entry_type: str,
        description: str,
        reference_type: str,
        reference_id: str,
        plan: Optional[str] = None,
    ) -> GrantResult:
        """Apply an external credit event (payment, plan change)."""
        credits = int(amount)
        if credits < 0:
            raise ValueError("Grant amount must not be negative.")

        values: Dict[str, Any] = {
            "total_credits": Account.total_credits + credits,
            "remaining_credits": Account.remaining_credits + credits,
            "version": Account.version + 1,
        }
        if plan:
            values["plan"] = plan

        try:
            async with self._session_maker() as db:
                existing = await self._find_reference(db, reference_type, reference_id)
                if existing is not None:
                    return GrantResult(new_balance=int(existing.balance_after or 0), transaction_id=existing.id, created=False)

                result = await db.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(**values)
                    .returning(Account.remaining_credits)
                    .execution_options(synchronize_session=False)
                )
                row = result.first()
                if row is None:
                    await db.rollback()
                    raise AccountNotFound(f"Account {account_id} not found.")

                new_balance = int(row[0])
                entry = CreditTransaction(
                    account_id=account_id,
                    amount=credits,
                    balance_before=new_balance - credits,
                    balance_after=new_balance,
                    type=entry_type,
                    status="completed",
                    description=description,
                    reference_type=reference_type,
                    reference_id=reference_id,
                )
                db.add(entry)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    existing = await self._find_reference(db, reference_type, reference_id)
                    if existing is None:
                        raise
                    return GrantResult(new_balance=int(existing.balance_after or 0), transaction_id=existing.id, created=False)
                return GrantResult(new_balance=new_balance, transaction_id=entry.id, created=True)
        except STORE_ERRORS as exc:
            raise StoreUnavailable() from exc

    async def is_billed(self, reference_id: str, reference_type: str = REFERENCE_GENERATION) -> bool:
        try:
            async with self._session_maker() as db:
                return await self._find_reference(db, reference_type, reference_id) is not None
        except STORE_ERRORS as exc:
            raise StoreUnavailable() from exc

    async def list_transactions(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CreditTransaction], int]:
        try:
            async with self._session_maker() as db:
                total = await db.execute(
                    select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == account_id)
                )
                result = await db.execute(
                    select(CreditTransaction)
                    .where(CreditTransaction.account_id == account_id)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                    .offset(max(int(offset), 0))
                    .limit(max(int(limit), 1))
                )
                return list(result.scalars().all()), int(total.scalar() or 0)
        except STORE_ERRORS as exc:
            raise StoreUnavailable() from exc

    @staticmethod
    async def _find_reference(
        db: AsyncSession,
        reference_type: str,
        reference_id: str,
    ) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction).where(
                CreditTransaction.reference_type == reference_type,
                CreditTransaction.reference_id == reference_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _already_billed(entry: CreditTransaction) -> DebitResult:
        return DebitResult(
            success=True,
            new_balance=int(entry.balance_after or 0),
            transaction_id=entry.id,
            already_billed=True,
        )
