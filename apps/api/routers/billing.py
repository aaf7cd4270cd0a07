"""Billing router: payment orders and payment verification."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.payment_order import PaymentOrder
from routers.auth_scope import get_identity
from routers.dependencies import get_credit_ledger
from routers.rate_limit import rate_limit
from services.credits import CreditLedger
from services.crypto import verify_payment_signature
from services.generation import Identity
from services.plans import DEFAULT_TIER, TOPUP_PACKAGES, find_plan, find_topup, get_plan, plan_catalog
from services.rate_limiter import ACTION_PAYMENT, ACTION_READ

router = APIRouter()
logger = logging.getLogger(__name__)

ORDER_KIND_PLAN = "plan"
ORDER_KIND_TOPUP = "topup"


class OrderRequest(BaseModel):
    kind: Literal["plan", "topup"]
    item_id: str = Field(min_length=1, max_length=64)


class VerifyRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=128)
    payment_id: str = Field(min_length=1, max_length=128)
    signature: str = Field(min_length=1, max_length=256)


def _require_payment_config() -> None:
    if not (settings.PAYMENT_KEY_SECRET or "").strip():
        raise HTTPException(status_code=503, detail="Payments are not configured.")


def _serialize_order(order: PaymentOrder) -> dict:
    return {
        "order_id": order.order_id,
        "kind": order.kind,
        "item_id": order.item_id,
        "credits": order.credits,
        "amount": order.amount_minor,
        "currency": order.currency,
        "status": order.status,
    }


@router.get("/plans")
async def list_plans(
    _rate_limit: None = Depends(rate_limit(ACTION_READ)),
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    account = await ledger.ensure_account(identity.user_id, identity.email, identity.name)
    tier = get_plan(account.plan).id
    topups = []
    if get_plan(tier).can_topup:
        topups = [
            {"id": package.id, "name": package.name, "credits": package.credits, "price": package.price_by_tier[tier] / 100}
            for package in TOPUP_PACKAGES
            if tier in package.price_by_tier
        ]
    return {"current_plan": tier, "plans": plan_catalog(), "topups": topups}


@router.post("/orders")
async def create_order(
    request: OrderRequest,
    _rate_limit: None = Depends(rate_limit(ACTION_PAYMENT)),
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_credit_ledger),
    db: AsyncSession = Depends(get_db),
):
    """Create a pending order for a plan upgrade or a credit top-up."""
    _require_payment_config()
    account = await ledger.ensure_account(identity.user_id, identity.email, identity.name)
    tier = get_plan(account.plan).id

    if request.kind == ORDER_KIND_PLAN:
        plan = find_plan(request.item_id)
        if plan is None:
            raise HTTPException(status_code=404, detail="Unknown plan.")
        if plan.id == DEFAULT_TIER:
            raise HTTPException(status_code=400, detail="The free plan does not require payment.")
        credits = plan.credits
        amount_minor = plan.price_monthly_minor
    else:
        package = find_topup(request.item_id)
        if package is None:
            raise HTTPException(status_code=404, detail="Unknown top-up package.")
        if not get_plan(tier).can_topup or tier not in package.price_by_tier:
            raise HTTPException(status_code=400, detail="Upgrade to a paid plan to purchase top-up credits.")
        credits = package.credits
        amount_minor = package.price_by_tier[tier]

    order = PaymentOrder(
        account_id=account.id,
        order_id=f"order_{uuid.uuid4().hex[:20]}",
        kind=request.kind,
        item_id=request.item_id,
        credits=credits,
        amount_minor=amount_minor,
        currency=settings.PAYMENT_CURRENCY,
        status="pending",
    )
    db.add(order)
    await db.commit()
    logger.info("Created %s order %s for %s (%s)", order.kind, order.order_id, account.id, order.item_id)

    payload = _serialize_order(order)
    payload["key_id"] = settings.PAYMENT_KEY_ID
    return payload


@router.post("/verify")
async def verify_payment(
    request: VerifyRequest,
    _rate_limit: None = Depends(rate_limit(ACTION_PAYMENT)),
    identity: Identity = Depends(get_identity),
    ledger: CreditLedger = Depends(get_credit_ledger),
    db: AsyncSession = Depends(get_db),
):
    """Verify the gateway signature, then credit the ledger exactly once per order."""
    _require_payment_config()
    if not verify_payment_signature(request.order_id, request.payment_id, request.signature):
        logger.warning("Rejected payment signature for order %s (%s)", request.order_id, identity.user_id)
        raise HTTPException(status_code=400, detail="Invalid payment signature.")

    result = await db.execute(
        select(PaymentOrder).where(
            PaymentOrder.order_id == request.order_id,
            PaymentOrder.account_id == identity.user_id,
        )
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found.")
    # The ledger writes through its own session; release this one's transaction first.
    await db.commit()

    is_plan = order.kind == ORDER_KIND_PLAN
    grant = await ledger.grant(
        order.account_id,
        order.credits,
        entry_type="plan_change" if is_plan else "topup",
        description=f"Plan upgrade to {order.item_id}" if is_plan else f"Top-up {order.item_id}",
        reference_type="payment",
        reference_id=order.order_id,
        plan=order.item_id if is_plan else None,
    )

    if order.status != "completed":
        order.status = "completed"
        order.payment_id = request.payment_id
        order.completed_at = datetime.now(timezone.utc)
        await db.commit()
        logger.info("Payment %s completed order %s for %s", request.payment_id, order.order_id, order.account_id)

    return {
        "success": True,
        "order": _serialize_order(order),
        "credits_added": order.credits if grant.created else 0,
        "remaining_credits": grant.new_balance,
        "already_processed": not grant.created,
    }
