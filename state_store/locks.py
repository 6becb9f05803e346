"""Per-aggregate asyncio locks shared by the dispatcher and the liquidation monitor."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List


def loan_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


def pool_key(pool_id: str) -> str:
    return f"pool:{pool_id}"


def auction_key(auction_id: str) -> str:
    return f"auction:{auction_id}"


def request_key(request_id: str) -> str:
    return f"request:{request_id}"


def domain_key(token_id: str) -> str:
    return f"domain:{token_id}"


def paid_request_key(request_id: str) -> str:
    return f"paid-request:{request_id}"


def manager_key(address: str) -> str:
    return f"manager:{address.lower()}"


class AggregateLocks:
    """Lazily created ``asyncio.Lock`` per aggregate key.

    ``hold`` acquires several keys in sorted order so two holders can never
    deadlock on overlapping key sets. A key's lock is dropped once nobody
    holds or waits on it, so the map only ever covers aggregates in flight.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        checked_out: List[str] = []
        acquired: List[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)
