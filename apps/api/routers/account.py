"""Account snapshot, credit history and generation history router."""

from fastapi import APIRouter, Depends, Query

from routers.auth_scope import get_identity
from routers.dependencies import get_credit_ledger, get_history_recorder
from routers.rate_limit import rate_limit
from services.credits import CreditLedger, serialize_account, serialize_transaction
from services.generation import Identity
from services.history import HistoryRecorder, serialize_history
from services.plans import plan_catalog
from services.rate_limiter import ACTION_ACCOUNT, ACTION_READ

router = APIRouter()

SNAPSHOT_TRANSACTIONS = 20


@router.get("/snapshot")
async def account_snapshot(
    _rate_limit: None = Depends(rate_limit(ACTION_ACCOUNT)),
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Authoritative profile, recent transactions and the plan catalog in one payload."""
    account = await ledger.ensure_account(identity.user_id, identity.email, identity.name)
    entries, _total = await ledger.list_transactions(account.id, limit=SNAPSHOT_TRANSACTIONS)
    return {
        "profile": serialize_account(account),
        "transactions": [serialize_transaction(entry) for entry in entries],
        "plans": plan_catalog(),
    }


@router.get("/credits")
async def credit_balance(
    history: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _rate_limit: None = Depends(rate_limit(ACTION_READ)),
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    account = await ledger.ensure_account(identity.user_id, identity.email, identity.name)
    payload = {"balance": serialize_account(account)}
    if history:
        entries, total = await ledger.list_transactions(account.id, limit=limit, offset=offset)
        payload["history"] = [serialize_transaction(entry) for entry in entries]
        payload["total"] = total
        payload["limit"] = limit
        payload["offset"] = offset
    return payload


@router.get("/history")
async def generation_history(
    limit: int = Query(default=20, ge=1, le=100),
    _rate_limit: None = Depends(rate_limit(ACTION_READ)),
    identity: Identity = Depends(get_identity),
    recorder: HistoryRecorder = Depends(get_history_recorder),
):
    entries = await recorder.list_recent(identity.user_id, limit=limit)
    return {
        "history": [serialize_history(entry) for entry in entries],
        "count": len(entries),
    }
