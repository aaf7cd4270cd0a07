"""Deferred billing for generations whose debit hit a store outage (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.credits import CreditLedger

logger = logging.getLogger(__name__)


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconcile_queue() -> Queue:
    return Queue(
        name=settings.RECONCILE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_billing_reconciliation(
    account_id: str,
    job_id: str,
    amount: int,
    description: str,
) -> Job:
    """Enqueue a re-debit for a completed job; the job id keeps it idempotent."""
    queue = get_reconcile_queue()
    return queue.enqueue(
        "services.reconciliation.reconcile_generation_billing",
        account_id,
        job_id,
        amount,
        description,
        job_id=f"reconcile:{job_id}",
        retry=Retry(max=5, interval=[30, 120, 600, 1800, 3600]),
        job_timeout=300,
        result_ttl=86400 * 7,
        failure_ttl=86400 * 30,
    )


async def reconcile_generation_billing_async(
    account_id: str,
    job_id: str,
    amount: int,
    description: str,
) -> Dict[str, Any]:
    result = await CreditLedger().debit(account_id, amount, description, reference_id=job_id)
    if result.already_billed:
        logger.info("Job %s was already billed, nothing to reconcile", job_id)
    elif result.success:
        logger.info("Reconciled billing for job %s: charged %s, balance %s", job_id, amount, result.new_balance)
    else:
        logger.error(
            "Billing discrepancy for job %s: %s (account %s, needed %s, balance %s)",
            job_id,
            result.error_kind,
            account_id,
            amount,
            result.new_balance,
        )
    return {
        "job_id": job_id,
        "success": result.success,
        "already_billed": result.already_billed,
        "new_balance": result.new_balance,
        "error_kind": result.error_kind,
    }


def reconcile_generation_billing(account_id: str, job_id: str, amount: int, description: str) -> Dict[str, Any]:
    """RQ worker entrypoint; StoreUnavailable propagates so RQ retries."""
    return asyncio.run(reconcile_generation_billing_async(account_id, job_id, amount, description))
