"""Signed-in session: owns the API client and the account cache for one user."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .account_cache import AccountCache, CreditsChanged
from .api_client import ApiError, VoiceApiClient

logger = logging.getLogger(__name__)


class AccountSession:
    """Created on login, torn down on logout.

    Every view of the signed-in user reads ``session.cache``; nothing about
    the account lives in module-level state.
    """

    def __init__(self, api: VoiceApiClient, cache: AccountCache):
        self.api = api
        self.cache = cache
        self.closed = False

    @classmethod
    async def login(
        cls,
        base_url: str,
        token: str,
        *,
        store=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ttl: float = 300.0,
        stale_after: float = 60.0,
        dedup_grace: float = 0.25,
        prefetch: bool = True,
    ) -> "AccountSession":
        api = VoiceApiClient(base_url, token=token, transport=transport)
        cache = AccountCache(api.fetch_snapshot, ttl=ttl, stale_after=stale_after, dedup_grace=dedup_grace, store=store)
        session = cls(api, cache)
        if prefetch:
            await cache.get()
        return session

    async def generate(
        self,
        text: str,
        voice_id: str,
        voice_name: Optional[str] = None,
        voice_settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Generate speech and push the returned balance to every subscriber."""
        current = self.cache.snapshot
        based_on_version = current.version if current is not None else None
        try:
            response = await self.api.generate(text, voice_id, voice_name=voice_name, voice_settings=voice_settings)
        except ApiError as exc:
            if exc.kind == "InsufficientFunds":
                # Our cached balance was wrong; let the server correct it.
                self.cache.on_credits_changed(None)
            raise

        usage = response.get("usage") or {}
        if response.get("success") and usage.get("credits_remaining") is not None:
            self.cache.on_credits_changed(
                CreditsChanged(
                    remaining_credits=int(usage["credits_remaining"]),
                    credits_used=int(usage.get("credits_used") or 0),
                    version=based_on_version,
                )
            )
        return response

    async def logout(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.cache.invalidate()
        await self.cache.close()
        await self.api.aclose()
        logger.info("Account session closed")

    async def __aenter__(self) -> "AccountSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.logout()
