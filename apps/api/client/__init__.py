"""Client SDK: API client, shared account cache and session lifecycle."""

from .account_cache import (
    AccountCache,
    AccountSnapshot,
    CreditsChanged,
    Freshness,
    JsonFileSnapshotStore,
    MemorySnapshotStore,
)
from .api_client import ApiError, VoiceApiClient
from .session import AccountSession
