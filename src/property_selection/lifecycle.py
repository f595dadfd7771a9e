from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import List, Optional, Set

from property_selection.constants import TOKEN_POOL_SIZE
from property_selection.errors import Cancelled


STATE_ACTIVE = "active"
STATE_STALE = "stale"
STATE_CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation flag that async waiters can await.

    Waiters are plain futures created on demand, so one token can be reused
    across event loops.
    """

    def __init__(self):
        self._cancelled = False
        self._waiters: List[asyncio.Future] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(None)

    def raise_if_cancelled(self):
        if self._cancelled:
            raise Cancelled("request was cancelled")

    async def wait(self):
        """Return once the token is cancelled."""

        if self._cancelled:
            return
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def reset(self):
        self._cancelled = False
        self._waiters = []


class TokenPool:
    """Bounded free list of cancellation tokens."""

    def __init__(self, size: int = TOKEN_POOL_SIZE):
        self.size = max(int(size), 0)
        self._free: List[CancellationToken] = []
        self._in_use: Set[CancellationToken] = set()

    def acquire(self) -> CancellationToken:
        token = self._free.pop() if self._free else CancellationToken()
        token.reset()
        self._in_use.add(token)
        return token

    def release(self, token: Optional[CancellationToken]):
        if token is None:
            return
        self._in_use.discard(token)
        # A cancelled token may still have waiters resolving; never reuse it.
        if token.cancelled or token in self._free:
            return
        if len(self._free) < self.size:
            self._free.append(token)

    def cancel_all(self):
        for token in list(self._in_use):
            token.cancel()
        self._in_use.clear()
        self._free.clear()

    @property
    def available(self) -> int:
        return len(self._free)

    @property
    def in_use(self) -> int:
        return len(self._in_use)


@dataclass(frozen=True)
class RequestToken:
    request_id: int
    token: CancellationToken


class RequestTracker:
    """Issues monotonically increasing request ids for one pipeline."""

    def __init__(self):
        self._counter = itertools.count(1)
        self._current = 0

    @property
    def current_id(self) -> int:
        return self._current

    def begin(self, token: Optional[CancellationToken] = None) -> RequestToken:
        self._current = next(self._counter)
        return RequestToken(self._current, token or CancellationToken())

    def is_current(self, request_id: int) -> bool:
        return request_id == self._current

    def check(self, request: RequestToken) -> str:
        # Superseded requests are dropped silently even if also cancelled.
        if not self.is_current(request.request_id):
            return STATE_STALE
        if request.token.cancelled:
            return STATE_CANCELLED
        return STATE_ACTIVE
