"""Metered text-to-speech generation: admission, submit, poll, bill, record."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from config import settings
from services.credits import CreditLedger
from services.errors import (
    GenerationFailed,
    GenerationTimedOut,
    InsufficientFunds,
    InvalidGenerationRequest,
    LedgerUnavailable,
    ProviderRejected,
    ProviderUnavailable,
    RateLimited,
    ServiceOverloaded,
    Unauthenticated,
)
from services.history import HistoryRecorder
from services.plans import get_plan
from services.provider import PollStatus, ProviderAdapter, VoiceSettings
from services.rate_limiter import ACTION_GENERATION, RateLimiter
from services.reconciliation import enqueue_billing_reconciliation

logger = logging.getLogger(__name__)

VOICE_ID_PATTERN = r"^[A-Za-z0-9_-]+$"

BILLED = "billed"
ALREADY_BILLED = "already_billed"
PENDING_RECONCILIATION = "pending_reconciliation"
UNBILLED = "unbilled"


class GenerationRequest(BaseModel):
    text: str = Field(min_length=1)
    voice_id: str = Field(min_length=1, max_length=128, pattern=VOICE_ID_PATTERN)
    voice_name: Optional[str] = Field(default=None, max_length=128)
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class JobState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


_STATE_RANK = {
    JobState.SUBMITTED: 0,
    JobState.POLLING: 1,
    JobState.COMPLETED: 2,
    JobState.FAILED: 2,
    JobState.TIMED_OUT: 2,
}


@dataclass
class GenerationJob:
    id: str
    account_id: str
    text_length: int
    voice_id: str
    settings: VoiceSettings
    state: JobState = JobState.SUBMITTED
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return _STATE_RANK[self.state] == 2

    def advance(self, state: JobState) -> None:
        """Move the job forward; terminal states and backward moves are rejected."""
        if self.is_terminal or _STATE_RANK[state] <= _STATE_RANK[self.state]:
            raise ValueError(f"Illegal job transition {self.state.value} -> {state.value}")
        self.state = state


@dataclass
class PollPolicy:
    max_attempts: int = 60
    interval_seconds: float = 2.0
    jitter_seconds: float = 0.0
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_settings(cls) -> "PollPolicy":
        return cls(
            max_attempts=max(int(settings.POLL_MAX_ATTEMPTS), 1),
            interval_seconds=max(float(settings.POLL_INTERVAL_SECONDS), 0.0),
            jitter_seconds=max(float(settings.POLL_JITTER_SECONDS), 0.0),
        )

    def delay(self) -> float:
        return self.interval_seconds + self.jitter_seconds * self.rng()

    @property
    def budget_seconds(self) -> float:
        return self.max_attempts * (self.interval_seconds + self.jitter_seconds)


@dataclass
class Usage:
    characters: int
    credits_used: int
    credits_remaining: Optional[int]


@dataclass
class GenerationResult:
    success: bool
    audio_url: Optional[str]
    task_id: str
    state: JobState
    usage: Usage
    billing_status: str
    error_kind: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "audio_url": self.audio_url,
            "task_id": self.task_id,
            "state": self.state.value,
            "usage": {
                "characters": self.usage.characters,
                "credits_used": self.usage.credits_used,
                "credits_remaining": self.usage.credits_remaining,
            },
            "billing_status": self.billing_status,
            "error_kind": self.error_kind,
        }


_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RE = re.compile(r"javascript:", re.IGNORECASE)
_HANDLER_RE = re.compile(r"on\w+=", re.IGNORECASE)
_SPACE_RE = re.compile(r"\s+")


def sanitize_text(text: str) -> str:
    """Strip markup and normalize whitespace before billing by length."""
    cleaned = _TAG_RE.sub("", text or "")
    cleaned = _SCRIPT_RE.sub("", cleaned)
    cleaned = _HANDLER_RE.sub("", cleaned)
    return _SPACE_RE.sub(" ", cleaned).strip()


Reconciler = Callable[[str, str, int, str], Any]


class GenerationOrchestrator:
    """Runs one generation request to a terminal state.

    States: Authenticating -> Admitted -> Submitted -> Polling ->
    Completed | Failed | TimedOut. Credits are only touched after the
    provider reports Completed.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        rate_limiter: RateLimiter,
        provider: ProviderAdapter,
        history: HistoryRecorder,
        policy: Optional[PollPolicy] = None,
        *,
        max_inflight: Optional[int] = None,
        cost_per_character: Optional[int] = None,
        reconciler: Optional[Reconciler] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.provider = provider
        self.history = history
        self.policy = policy or PollPolicy.from_settings()
        self.cost_per_character = int(
            cost_per_character if cost_per_character is not None else settings.COST_PER_CHARACTER
        )
        self._inflight = asyncio.Semaphore(max(int(max_inflight or settings.MAX_INFLIGHT_GENERATIONS), 1))
        self._reconciler = reconciler or enqueue_billing_reconciliation
        self._sleep = sleep

    def cost_for(self, text: str) -> int:
        return len(text) * self.cost_per_character

    async def generate(self, identity: Optional[Identity], request: GenerationRequest) -> GenerationResult:
        # Authenticating
        if identity is None or not str(identity.user_id or "").strip():
            raise Unauthenticated()

        text = sanitize_text(request.text)
        if not text:
            raise InvalidGenerationRequest("Text is required.")
        if len(text) > int(settings.MAX_TEXT_LENGTH):
            raise InvalidGenerationRequest(
                f"Text exceeds maximum length of {settings.MAX_TEXT_LENGTH} characters."
            )

        account = await self.ledger.ensure_account(identity.user_id, identity.email, identity.name)
        plan = get_plan(account.plan)
        if len(text) > plan.max_chars_per_generation:
            raise InvalidGenerationRequest(
                f"The {plan.name} plan allows {plan.max_chars_per_generation} characters per generation."
            )

        cost = self.cost_for(text)

        decision = await self.rate_limiter.check(account.id, account.plan, ACTION_GENERATION)
        if not decision.allowed:
            raise RateLimited(decision.retry_after or 1, decision)

        balance = await self.ledger.check_balance(account.id, cost)
        if not balance.sufficient:
            logger.info("Generation refused for %s: needs %s credits, has %s", account.id, cost, balance.remaining)
            raise InsufficientFunds(needed=cost, have=balance.remaining)

        # Admitted
        if self._inflight.locked():
            logger.warning("Shedding generation for %s: in-flight limit reached", account.id)
            raise ServiceOverloaded()

        async with self._inflight:
            job_id = await self.provider.submit(text, request.voice_id, request.voice_settings)
            job = GenerationJob(
                id=job_id,
                account_id=account.id,
                text_length=len(text),
                voice_id=request.voice_id,
                settings=request.voice_settings,
            )
            logger.info("Submitted generation job %s for %s (%s chars)", job.id, account.id, job.text_length)
            await self._poll_until_terminal(job)

        if job.state == JobState.COMPLETED:
            return await self.complete_job(
                job,
                text=text,
                cost=cost,
                voice_name=request.voice_name,
                expected_remaining=balance.remaining - cost,
            )
        if job.state == JobState.FAILED:
            logger.warning("Generation job %s failed: %s", job.id, job.error_message)
            raise GenerationFailed(job.error_message)

        logger.warning(
            "Generation job %s still pending after %s polls; returning as processing",
            job.id,
            job.attempts,
        )
        raise GenerationTimedOut(job.id)

    async def _poll_until_terminal(self, job: GenerationJob) -> None:
        job.advance(JobState.POLLING)
        for attempt in range(1, self.policy.max_attempts + 1):
            if attempt > 1:
                await self._sleep(self.policy.delay())
            job.attempts = attempt
            try:
                result = await self.provider.poll(job.id)
            except ProviderUnavailable:
                logger.warning("Poll %s/%s for job %s failed transiently", attempt, self.policy.max_attempts, job.id)
                continue
            except ProviderRejected as exc:
                job.error_message = exc.user_message
                job.advance(JobState.FAILED)
                return

            if result.status == PollStatus.COMPLETED:
                job.result_url = result.result_url
                job.advance(JobState.COMPLETED)
                return
            if result.status == PollStatus.FAILED:
                job.error_message = result.error_message
                job.advance(JobState.FAILED)
                return

        job.advance(JobState.TIMED_OUT)

    async def complete_job(
        self,
        job: GenerationJob,
        *,
        text: str,
        cost: int,
        voice_name: Optional[str] = None,
        expected_remaining: Optional[int] = None,
    ) -> GenerationResult:
        """Bill a completed job, then record history.

        Safe to call more than once for the same job: the ledger bills a job
        id at most once and history rows are keyed by job id.
        """
        if job.state != JobState.COMPLETED or not job.result_url:
            raise ValueError(f"Job {job.id} is not completed.")

        description = f"TTS Generation: {len(text)} characters"
        error_kind: Optional[str] = None
        try:
            debit = await self.ledger.debit(job.account_id, cost, description, reference_id=job.id)
        except LedgerUnavailable as exc:
            logger.error(
                "Billing discrepancy: job %s for %s completed but debit of %s failed (%s)",
                job.id,
                job.account_id,
                cost,
                exc.kind,
            )
            billing_status = PENDING_RECONCILIATION
            error_kind = exc.kind
            credits_used = cost
            credits_remaining = max(expected_remaining, 0) if expected_remaining is not None else None
            self._schedule_reconciliation(job, cost, description)
        else:
            credits_remaining = debit.new_balance
            if debit.success:
                billing_status = ALREADY_BILLED if debit.already_billed else BILLED
                credits_used = cost
            else:
                logger.error(
                    "Billing discrepancy: job %s for %s completed but balance fell to %s before debit of %s",
                    job.id,
                    job.account_id,
                    debit.new_balance,
                    cost,
                )
                billing_status = UNBILLED
                error_kind = debit.error_kind
                credits_used = 0

        await self.history.append(
            account_id=job.account_id,
            job_id=job.id,
            text=text,
            voice_id=job.voice_id,
            voice_name=voice_name,
            audio_url=job.result_url,
            characters_used=len(text),
            credits_used=credits_used,
            settings=job.settings.model_dump(),
        )

        return GenerationResult(
            success=True,
            audio_url=job.result_url,
            task_id=job.id,
            state=job.state,
            usage=Usage(characters=len(text), credits_used=credits_used, credits_remaining=credits_remaining),
            billing_status=billing_status,
            error_kind=error_kind,
        )

    def _schedule_reconciliation(self, job: GenerationJob, cost: int, description: str) -> None:
        try:
            self._reconciler(job.account_id, job.id, cost, description)
            logger.info("Queued billing reconciliation for job %s", job.id)
        except Exception as exc:
            logger.error("Could not queue billing reconciliation for job %s: %s", job.id, exc)
