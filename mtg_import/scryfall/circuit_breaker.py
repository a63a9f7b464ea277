"""
Circuit breaker per le chiamate upstream.

Stati:
- CLOSED: operativita' normale, le chiamate passano
- OPEN: troppi fallimenti consecutivi, le chiamate sono rifiutate subito
- HALF_OPEN: trascorso il cooldown passa una sola chiamata di prova

Contano come fallimento solo le eccezioni in expected_exception (errori transitori
o di rete). Qualsiasi altra eccezione significa che l'upstream ha risposto.
Un'istanza per ogni esecuzione di job.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from mtg_import.core.errors import CircuitOpenError, TransientUpstreamError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        max_retries: int = 3,
        expected_exception: type[BaseException] | tuple[type[BaseException], ...] = (
            TransientUpstreamError,
            httpx.TransportError,
        ),
        clock: Callable[[], float] = time.monotonic,
        name: str = "scryfall",
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.max_retries = max_retries
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock

        self.state = self.CLOSED
        self.failure_count = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Esegue func con la protezione del breaker.

        Raises:
            CircuitOpenError: se il circuito e' aperto (func non viene chiamata)
            L'eccezione originale se func fallisce
        """
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception:
            self._on_success()
            raise
        self._on_success()
        return result

    def time_until_retry(self) -> float:
        if self.state != self.OPEN or self._opened_at is None:
            return 0.0
        return max(self.cooldown - (self._clock() - self._opened_at), 0.0)

    def reset(self) -> None:
        self.state = self.CLOSED
        self.failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _before_call(self) -> None:
        if self.state == self.OPEN:
            remaining = self.time_until_retry()
            if remaining > 0:
                raise CircuitOpenError(remaining)
            self.state = self.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker %s half-open, chiamata di prova", self.name)

        if self.state == self.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(0.0)
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info("Circuit breaker %s chiuso", self.name)
        self.state = self.CLOSED
        self.failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        if self.state == self.HALF_OPEN:
            self._open()
            return
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = self.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit breaker %s aperto dopo %s fallimenti, cooldown %.1fs",
            self.name, self.failure_count, self.cooldown,
        )
