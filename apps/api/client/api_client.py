"""Async HTTP client for the Voice Studio API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-success response from the API, carrying the decoded error payload."""

    def __init__(self, status_code: int, payload: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.payload = payload or {}
        self.kind = str(self.payload.get("kind") or self.payload.get("error") or "HTTPError")
        message = self.payload.get("message") or self.payload.get("detail") or f"HTTP {status_code}"
        super().__init__(str(message))

    @property
    def retry_after(self) -> Optional[int]:
        value = self.payload.get("retry_after")
        return int(value) if value is not None else None


class VoiceApiClient:
    """Bearer-authenticated wrapper around the account and generation endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 150.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._http.request(method, path, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {"detail": response.text[:500]}
        if response.status_code >= 400:
            logger.debug("%s %s failed with %s: %s", method, path, response.status_code, payload)
            raise ApiError(response.status_code, payload)
        return payload

    async def fetch_snapshot(self) -> Dict[str, Any]:
        """GET /account/snapshot -> ``{profile, transactions, plans}``."""
        return await self._request("GET", "/account/snapshot")

    async def get_credits(self, history: bool = False, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        params = {"history": str(history).lower(), "limit": limit, "offset": offset}
        return await self._request("GET", "/account/credits", params=params)

    async def get_history(self, limit: int = 20) -> Dict[str, Any]:
        return await self._request("GET", "/account/history", params={"limit": limit})

    async def generate(
        self,
        text: str,
        voice_id: str,
        voice_name: Optional[str] = None,
        voice_settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """POST /tts.

        A 202 "still processing" answer is returned as a payload, not raised.
        """
        body: Dict[str, Any] = {"text": text, "voice_id": voice_id}
        if voice_name:
            body["voice_name"] = voice_name
        if voice_settings:
            body["voice_settings"] = voice_settings
        return await self._request("POST", "/tts", json=body)

    async def aclose(self) -> None:
        await self._http.aclose()
