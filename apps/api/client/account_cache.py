"""Shared account state for every consumer of one signed-in session.

All concurrent readers share a single snapshot fetch, optimistic balance
patches are broadcast immediately, and server-pushed rows always win over
anything the client guessed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 2

# Fields a pushed account row may overwrite.
BALANCE_FIELDS = ("remaining_credits", "used_credits", "total_credits", "plan", "reset_date")


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AccountSnapshot:
    profile: Dict[str, Any]
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    plans: List[Dict[str, Any]] = field(default_factory=list)
    fetched_at: float = 0.0
    optimistic: bool = False

    @property
    def remaining_credits(self) -> int:
        return int(self.profile.get("remaining_credits") or 0)

    @property
    def plan(self) -> Optional[str]:
        return self.profile.get("plan")

    @property
    def version(self) -> Optional[int]:
        return _row_version(self.profile)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], fetched_at: float) -> "AccountSnapshot":
        """Build from an ``/account/snapshot`` response."""
        return cls(
            profile=dict(payload.get("profile") or {}),
            transactions=list(payload.get("transactions") or []),
            plans=list(payload.get("plans") or []),
            fetched_at=fetched_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "transactions": self.transactions,
            "plans": self.plans,
            "fetched_at": self.fetched_at,
            "optimistic": self.optimistic,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountSnapshot":
        return cls(
            profile=dict(data["profile"]),
            transactions=list(data.get("transactions") or []),
            plans=list(data.get("plans") or []),
            fetched_at=float(data.get("fetched_at") or 0.0),
            optimistic=bool(data.get("optimistic", False)),
        )


@dataclass(frozen=True)
class CreditsChanged:
    """In-process credits event; ``remaining_credits=None`` means refetch."""

    remaining_credits: Optional[int] = None
    credits_used: Optional[int] = None
    version: Optional[int] = None


def _row_version(row: Dict[str, Any]) -> Optional[int]:
    value = row.get("version")
    return int(value) if value is not None else None


def _is_older(incoming: Optional[int], current: Optional[int]) -> bool:
    return incoming is not None and current is not None and incoming < current


class MemorySnapshotStore:
    def __init__(self):
        self._snapshot: Optional[AccountSnapshot] = None

    def load(self) -> Optional[AccountSnapshot]:
        return self._snapshot

    def save(self, snapshot: AccountSnapshot) -> None:
        self._snapshot = snapshot

    def clear(self) -> None:
        self._snapshot = None


class JsonFileSnapshotStore:
    """Persists the snapshot to a JSON file; unreadable or outdated files are dropped."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[AccountSnapshot]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable account snapshot %s: %s", self.path, exc)
            self.clear()
            return None

        if not isinstance(data, dict) or data.get("v") != SNAPSHOT_FORMAT_VERSION:
            self.clear()
            return None
        try:
            return AccountSnapshot.from_dict(data["snapshot"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed account snapshot %s: %s", self.path, exc)
            self.clear()
            return None

    def save(self, snapshot: AccountSnapshot) -> None:
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump({"v": SNAPSHOT_FORMAT_VERSION, "snapshot": snapshot.to_dict()}, handle)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.warning("Could not persist account snapshot to %s: %s", self.path, exc)

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove account snapshot %s: %s", self.path, exc)


Fetcher = Callable[[], Awaitable[Dict[str, Any]]]
Subscriber = Callable[[Optional[AccountSnapshot]], Any]


def _retrieve_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class AccountCache:
    """Single-flight account snapshot cache with a synchronous subscriber hub.

    Freshness is two-tier: younger than ``stale_after`` is served as is,
    younger than ``ttl`` is served while a silent refresh runs, anything
    older (or nothing) waits for the shared fetch.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        ttl: float = 300.0,
        stale_after: float = 60.0,
        dedup_grace: float = 0.25,
        store=None,
        clock: Callable[[], float] = time.time,
    ):
        self._fetcher = fetcher
        self.ttl = float(ttl)
        self.stale_after = min(float(stale_after), self.ttl)
        self.dedup_grace = max(float(dedup_grace), 0.0)
        self._store = store if store is not None else MemorySnapshotStore()
        self._clock = clock

        self._snapshot: Optional[AccountSnapshot] = None
        self._loaded = False
        self._inflight: Optional[asyncio.Future] = None
        self._grace_handle: Optional[asyncio.TimerHandle] = None
        self._epoch = 0
        # Version of the last server snapshot optimistic patches are based on.
        self._base_version: Optional[int] = None
        self._subscribers: List[Subscriber] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def snapshot(self) -> Optional[AccountSnapshot]:
        """Current value without touching the network."""
        if not self._loaded:
            self._loaded = True
            self._snapshot = self._store.load()
            if self._snapshot is not None:
                self._base_version = self._snapshot.version
        return self._snapshot

    @property
    def fetch_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def freshness(self, snapshot: Optional[AccountSnapshot] = None) -> Freshness:
        snapshot = snapshot if snapshot is not None else self.snapshot
        if snapshot is None:
            return Freshness.EXPIRED
        age = self._clock() - snapshot.fetched_at
        if age < self.stale_after:
            return Freshness.FRESH
        if age < self.ttl:
            return Freshness.STALE
        return Freshness.EXPIRED

    async def get(self) -> AccountSnapshot:
        snapshot = self.snapshot
        state = self.freshness(snapshot)
        if state == Freshness.FRESH:
            return snapshot
        if state == Freshness.STALE:
            if self._inflight is None:
                self._refresh_in_background(force=False)
            return snapshot
        return await self.fetch_shared()

    async def fetch_shared(self) -> AccountSnapshot:
        """Join the in-flight fetch, or start one that later callers will join.

        A caller that is cancelled stops waiting but does not cancel the fetch.
        """
        future = self._inflight
        if future is None:
            future = self._start_fetch()
        return await asyncio.shield(future)

    async def refresh(self) -> AccountSnapshot:
        """Fetch again unless a fetch is still running, in which case join it."""
        future = self._inflight
        if future is None or future.done():
            future = self._start_fetch()
        return await asyncio.shield(future)

    def apply_optimistic(
        self,
        new_remaining: int,
        credits_used_delta: Optional[int] = None,
        based_on_version: Optional[int] = None,
    ) -> Optional[AccountSnapshot]:
        """Patch the cached balance and broadcast it without a round trip.

        ``based_on_version`` is the account version the new balance was
        computed against; it defaults to the last fetched snapshot. A patch
        based on anything older than the cached version is dropped, so a
        pushed row that already landed keeps its value. Returns None when
        there is no snapshot or the patch was dropped.
        """
        current = self.snapshot
        if current is None:
            return None

        base = based_on_version if based_on_version is not None else self._base_version
        if current.version is not None and (base is None or base < current.version):
            logger.info("Dropping optimistic balance based on v%s; cached v%s is newer", base, current.version)
            return None

        profile = dict(current.profile)
        profile["remaining_credits"] = max(int(new_remaining), 0)
        if credits_used_delta:
            profile["used_credits"] = int(profile.get("used_credits") or 0) + int(credits_used_delta)
        snapshot = replace(current, profile=profile, optimistic=True)
        self._set(snapshot)
        return snapshot

    def reconcile(self, row: Dict[str, Any]) -> bool:
        """Overwrite balance and tier from a server-pushed account row.

        Returns False when the row carries a version older than the cached one.
        """
        current = self.snapshot
        incoming = _row_version(row)
        if current is not None and _is_older(incoming, current.version):
            logger.info("Ignoring account push v%s older than cached v%s", incoming, current.version)
            return False

        changes = {key: row[key] for key in BALANCE_FIELDS if key in row}
        if "remaining_credits" in changes:
            changes["remaining_credits"] = max(int(changes["remaining_credits"] or 0), 0)
        if incoming is not None:
            changes["version"] = incoming

        if current is None:
            # Expired on arrival, so the next get() still fetches the full snapshot.
            snapshot = AccountSnapshot(profile=changes, fetched_at=0.0)
        else:
            snapshot = replace(current, profile={**current.profile, **changes}, optimistic=False)
        self._set(snapshot)
        return True

    def on_credits_changed(self, event: Optional[CreditsChanged] = None) -> Optional[asyncio.Task]:
        """Handle a credits-changed broadcast; returns the refetch task if one was started."""
        if event is not None and event.remaining_credits is not None:
            if self.apply_optimistic(event.remaining_credits, event.credits_used, event.version) is not None:
                return None
        return self._refresh_in_background(force=True)

    def invalidate(self) -> None:
        """Drop the cached snapshot and forget any in-flight fetch."""
        self._epoch += 1
        self._cancel_grace()
        self._inflight = None
        self._snapshot = None
        self._base_version = None
        self._loaded = True
        self._store.clear()
        self._notify(None)

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        if handler not in self._subscribers:
            self._subscribers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: Subscriber) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def close(self) -> None:
        self._cancel_grace()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscribers.clear()

    def _start_fetch(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        self._cancel_grace()
        future = loop.create_future()
        future.add_done_callback(_retrieve_exception)
        self._inflight = future
        self._track(loop.create_task(self._run_fetch(future, self._epoch)))
        return future

    async def _run_fetch(self, future: asyncio.Future, epoch: int) -> None:
        try:
            payload = await self._fetcher()
        except asyncio.CancelledError:
            self._clear_inflight(future)
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            logger.warning("Account snapshot fetch failed: %s", exc)
            self._clear_inflight(future)
            if not future.done():
                future.set_exception(exc)
            return

        snapshot = AccountSnapshot.from_payload(payload, self._clock())
        if epoch == self._epoch:
            snapshot = self._accept_fetched(snapshot)
        if not future.done():
            future.set_result(snapshot)

        # Callers arriving within the grace window still share this result.
        if self._inflight is future:
            loop = asyncio.get_running_loop()
            self._grace_handle = loop.call_later(self.dedup_grace, self._clear_inflight, future)

    def _accept_fetched(self, snapshot: AccountSnapshot) -> AccountSnapshot:
        current = self._snapshot
        if current is not None and _is_older(snapshot.version, current.version):
            # A newer pushed row landed while the fetch was on the wire.
            kept = {key: current.profile[key] for key in BALANCE_FIELDS + ("version",) if key in current.profile}
            snapshot = replace(snapshot, profile={**snapshot.profile, **kept})
        self._base_version = snapshot.version
        self._set(snapshot)
        return snapshot

    def _refresh_in_background(self, force: bool) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._quiet(self.refresh() if force else self.fetch_shared()))
        self._track(task)
        return task

    @staticmethod
    async def _quiet(awaitable: Awaitable[AccountSnapshot]) -> Optional[AccountSnapshot]:
        try:
            return await awaitable
        except Exception as exc:
            logger.warning("Background account refresh failed: %s", exc)
            return None

    def _set(self, snapshot: AccountSnapshot) -> None:
        self._snapshot = snapshot
        self._loaded = True
        self._store.save(snapshot)
        self._notify(snapshot)

    def _notify(self, snapshot: Optional[AccountSnapshot]) -> None:
        for handler in list(self._subscribers):
            try:
                handler(snapshot)
            except Exception:
                logger.exception("Account subscriber %r failed", handler)

    def _clear_inflight(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
            self._grace_handle = None

    def _cancel_grace(self) -> None:
        if self._grace_handle is not None:
            self._grace_handle.cancel()
            self._grace_handle = None

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
