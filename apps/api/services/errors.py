"""Typed errors raised by the generation pipeline and the credit ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional


class GenerationError(Exception):
    """Base class for every user-visible pipeline error."""

    kind = "GenerationError"
    status_code = 500
    retryable = False

    def __init__(self, user_message: str):
        super().__init__(user_message)
        self.user_message = user_message

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.kind,
            "kind": self.kind,
            "message": self.user_message,
            "retryable": self.retryable,
        }


class Unauthenticated(GenerationError):
    kind = "Unauthenticated"
    status_code = 401

    def __init__(self, user_message: str = "Authentication required. Sign in to continue."):
        super().__init__(user_message)


class RateLimited(GenerationError):
    kind = "RateLimited"
    status_code = 429
    retryable = True

    def __init__(self, retry_after: int, decision: Any = None):
        self.retry_after = max(int(retry_after), 1)
        self.decision = decision
        super().__init__(f"Too many requests. Please wait {self.retry_after} seconds.")

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retry_after"] = self.retry_after
        return payload


class InsufficientFunds(GenerationError):
    kind = "InsufficientFunds"
    status_code = 402

    def __init__(self, needed: int, have: int):
        self.needed = int(needed)
        self.have = int(have)
        super().__init__(
            f"You need {self.needed} credits but only have {self.have}. "
            "Upgrade your plan or purchase more credits."
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["credits_needed"] = self.needed
        payload["credits_remaining"] = self.have
        return payload


class InvalidGenerationRequest(GenerationError):
    kind = "InvalidRequest"
    status_code = 422


class ProviderRejected(GenerationError):
    kind = "ProviderRejected"
    status_code = 400

    def __init__(self, user_message: str = "The voice service rejected this request.", provider_status: Optional[int] = None):
        self.provider_status = provider_status
        super().__init__(user_message)


class ProviderUnavailable(GenerationError):
    kind = "ProviderUnavailable"
    status_code = 502
    retryable = True

    def __init__(self, user_message: str = "Voice service temporarily unavailable. Try again shortly."):
        super().__init__(user_message)


class GenerationFailed(GenerationError):
    kind = "GenerationFailed"
    status_code = 502

    def __init__(self, provider_message: Optional[str] = None):
        self.provider_message = provider_message or "Unknown error"
        super().__init__(f"Voice generation failed: {self.provider_message}")


class GenerationTimedOut(GenerationError):
    """The job did not reach a terminal state within the poll budget.

    Not a failure: the provider may still finish, so callers report it as
    "still processing" and must not resubmit.
    """

    kind = "GenerationTimedOut"
    status_code = 202
    retryable = True

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__("Your audio is still processing. Check back in a moment.")

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["task_id"] = self.job_id
        payload["state"] = "timed_out"
        return payload


class ServiceOverloaded(GenerationError):
    kind = "ServiceOverloaded"
    status_code = 503
    retryable = True

    def __init__(self, user_message: str = "We are handling too many generations right now. Try again shortly."):
        super().__init__(user_message)


class LedgerError(Exception):
    """Base exception for credit ledger operations."""


class LedgerUnavailable(LedgerError, GenerationError):
    kind = "LedgerUnavailable"
    status_code = 503
    retryable = True

    def __init__(self, user_message: str = "Billing is temporarily unavailable. Try again shortly."):
        GenerationError.__init__(self, user_message)


class StoreUnavailable(LedgerUnavailable):
    """The transactional store could not be reached."""

    kind = "StoreUnavailable"


class AccountNotFound(LedgerError):
    """Raised when the requested account cannot be located."""
