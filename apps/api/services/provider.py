"""Thin submit/poll client for the external text-to-speech provider.

The adapter never retries; the orchestrator owns the retry and latency budget.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from config import require_provider_api_key, settings
from services.errors import ProviderRejected, ProviderUnavailable

logger = logging.getLogger(__name__)


class VoiceSettings(BaseModel):
    stability: float = Field(default=0.5, ge=0.0, le=1.0)
    similarity_boost: float = Field(default=0.75, ge=0.0, le=1.0)
    style: float = Field(default=0.0, ge=0.0, le=1.0)
    speed: float = Field(default=1.0, ge=0.7, le=1.2)
    use_speaker_boost: bool = True


class PollStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    result_url: Optional[str] = None
    error_message: Optional[str] = None


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.status_code >= 500:
        logger.error("Provider %s failed: %s %s", action, response.status_code, response.text[:500])
        raise ProviderUnavailable()
    if response.status_code >= 400:
        logger.warning("Provider %s rejected: %s %s", action, response.status_code, response.text[:500])
        raise ProviderRejected(provider_status=response.status_code)


def _unwrap(response: httpx.Response, action: str) -> Dict[str, Any]:
    """Return the ``data`` member of the provider envelope."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderUnavailable() from exc
    if not isinstance(payload, dict):
        logger.error("Provider %s returned a non-object body: %s", action, response.text[:500])
        raise ProviderUnavailable()

    try:
        code = int(payload.get("code") or 0)
    except (TypeError, ValueError) as exc:
        logger.error("Provider %s returned an unreadable code: %r", action, payload.get("code"))
        raise ProviderUnavailable() from exc
    if code != 200:
        message = str(payload.get("msg") or "unknown provider error")
        logger.warning("Provider %s returned code=%s msg=%s", action, code, message)
        if 400 <= code < 500:
            raise ProviderRejected(f"The voice service rejected this request: {message}", provider_status=code)
        raise ProviderUnavailable()

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        logger.error("Provider %s returned a non-object data member: %r", action, data)
        raise ProviderUnavailable()
    return data


class ProviderAdapter:
    """Stateless wrapper around ``/jobs/createTask`` and ``/jobs/recordInfo``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PROVIDER_BASE_URL).rstrip("/")
        self._api_key = api_key
        self.model = model or settings.PROVIDER_MODEL
        self._timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        api_key = self._api_key or require_provider_api_key()
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def submit(self, text: str, voice_id: str, voice_settings: Optional[VoiceSettings] = None) -> str:
        """Create a generation task and return the provider-assigned job id."""
        options = voice_settings or VoiceSettings()
        body = {
            "model": self.model,
            "input": {
                "text": text,
                "voice": voice_id,
                "stability": options.stability,
                "similarity_boost": options.similarity_boost,
                "style": options.style,
                "speed": options.speed,
                "use_speaker_boost": options.use_speaker_boost,
            },
        }
        try:
            async with self._client() as client:
                response = await client.post("/jobs/createTask", json=body)
        except httpx.HTTPError as exc:
            logger.error("Provider submit network error: %s", exc)
            raise ProviderUnavailable() from exc

        _raise_for_status(response, "submit")
        data = _unwrap(response, "submit")
        job_id = str(data.get("taskId") or "").strip()
        if not job_id:
            raise ProviderUnavailable()
        return job_id

    async def poll(self, job_id: str) -> PollResult:
        try:
            async with self._client() as client:
                response = await client.get("/jobs/recordInfo", params={"taskId": job_id})
        except httpx.HTTPError as exc:
            logger.error("Provider poll network error for %s: %s", job_id, exc)
            raise ProviderUnavailable() from exc

        _raise_for_status(response, "poll")
        data = _unwrap(response, "poll")
        state = str(data.get("state") or "").lower()

        if state == "success":
            result_url = _first_result_url(data.get("resultJson"))
            if not result_url:
                return PollResult(status=PollStatus.FAILED, error_message="No audio URL in result")
            return PollResult(status=PollStatus.COMPLETED, result_url=result_url)
        if state in {"failed", "fail"}:
            return PollResult(status=PollStatus.FAILED, error_message=str(data.get("failMsg") or "Unknown error"))
        return PollResult(status=PollStatus.PENDING)


def _first_result_url(raw: Any) -> Optional[str]:
    if not raw:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    urls = raw.get("resultUrls") if isinstance(raw, dict) else None
    if not isinstance(urls, list) or not urls:
        return None
    first = urls[0]
    if not isinstance(first, str) or not first.strip():
        return None
    return first.strip()
