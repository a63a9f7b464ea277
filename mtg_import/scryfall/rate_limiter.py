"""
Rate limiter asincrono per l'API Scryfall.

Scryfall chiede 50-100 ms tra le richieste: token bucket (max_per_second, ricarica
lazy) + intervallo minimo tra due concessioni. Le richieste sono servite in ordine
FIFO da un unico task interno; nessuna viene mai rifiutata, solo ritardata.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

_EPSILON = 1e-9
WINDOW_SECONDS = 1.0


class RateLimiter:
    """Token bucket + gap minimo + finestra mobile di un secondo."""

    def __init__(
        self,
        max_per_second: int = 10,
        min_interval_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_per_second < 1:
            raise ValueError("max_per_second must be >= 1")
        self.max_per_second = max_per_second
        self.min_interval = max(min_interval_ms, 0) / 1000.0
        self._clock = clock
        self._sleep = sleep

        self._tokens = float(max_per_second)
        self._last_refill = clock()
        self._last_grant: float | None = None
        self._grants: deque[float] = deque()

        self._waiters: deque[asyncio.Future] = deque()
        self._drainer: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        """Attende uno slot libero e lo consuma. Sicuro con chiamanti concorrenti."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.append(waiter)
        if self._drainer is None or self._drainer.done():
            self._drainer = loop.create_task(self._drain())
        await waiter

    async def _drain(self) -> None:
        while self._waiters:
            head = self._waiters[0]
            if head.done():
                # cancellato mentre era in coda: non consuma slot
                self._waiters.popleft()
                continue
            delay = self._delay_until_grant()
            if delay > _EPSILON:
                await self._sleep(delay)
                continue
            self._waiters.popleft()
            if head.done():
                continue
            self._grant()
            head.set_result(None)

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(
                float(self.max_per_second),
                self._tokens + elapsed * self.max_per_second,
            )
            self._last_refill = now

    def _delay_until_grant(self) -> float:
        now = self._clock()
        self._refill(now)

        while self._grants and now - self._grants[0] >= WINDOW_SECONDS - _EPSILON:
            self._grants.popleft()

        delay = 0.0
        if self._last_grant is not None:
            delay = max(delay, self.min_interval - (now - self._last_grant))
        if self._tokens < 1.0 - _EPSILON:
            delay = max(delay, (1.0 - self._tokens) / self.max_per_second)
        if len(self._grants) >= self.max_per_second:
            delay = max(delay, self._grants[0] + WINDOW_SECONDS - now)
        return delay

    def _grant(self) -> None:
        now = self._clock()
        self._tokens = max(self._tokens - 1.0, 0.0)
        self._last_grant = now
        self._grants.append(now)
