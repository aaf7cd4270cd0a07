"""Service dependencies shared by the routers."""

from __future__ import annotations

from typing import Optional

from services.credits import CreditLedger
from services.generation import GenerationOrchestrator, PollPolicy
from services.history import HistoryRecorder
from services.provider import ProviderAdapter
from services.rate_limiter import get_rate_limiter


_orchestrator: Optional[GenerationOrchestrator] = None


def get_credit_ledger() -> CreditLedger:
    return CreditLedger()


def get_history_recorder() -> HistoryRecorder:
    return HistoryRecorder()


def get_generation_orchestrator() -> GenerationOrchestrator:
    """One orchestrator per process so the in-flight cap is shared."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = GenerationOrchestrator(
            ledger=CreditLedger(),
            rate_limiter=get_rate_limiter(),
            provider=ProviderAdapter(),
            history=HistoryRecorder(),
            policy=PollPolicy.from_settings(),
        )
    return _orchestrator
