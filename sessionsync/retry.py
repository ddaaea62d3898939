"""
Retry borné avec backoff exponentiel, et circuit breaker pour les appels
répétables (fetch_user, refresh_token).

Le délai d'attente est injectable (`sleep`) pour tester la courbe de
backoff sans horloge réelle.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("session_sync.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float, maximum: float, factor: float = 2.0) -> float:
    """Délai après la tentative `attempt` (1-indexée): base * factor^(attempt-1), plafonné."""
    return min(base * (factor ** (attempt - 1)), maximum)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    is_retryable: Callable[[Exception], bool],
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Exécute `operation` au plus `max_attempts` fois.

    Les erreurs non retryables sont relancées immédiatement; la dernière
    erreur retryable est relancée une fois le plafond atteint.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_attempts:
                if attempt > 1:
                    logger.warning("retry_exhausted op=%s attempts=%s error=%s", label, attempt, repr(e))
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info("retry_scheduled op=%s attempt=%s delay=%.2f error=%s", label, attempt, delay, repr(e))
            await sleep(delay)


class CircuitOpen(Exception):
    """Appel refusé: backoff en cours après des échecs répétés."""
    pass


class CircuitBreaker:
    """
    Coalesce les appels concurrents et espace les tentatives après échec.

    - Un seul appel en vol: les appelants concurrents attendent le même résultat
    - Après N échecs consécutifs: attente base * 2^(N-1), plafonnée à max_backoff
    """

    def __init__(
        self,
        name: str,
        base_backoff: float = 5.0,
        max_backoff: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self._clock = clock
        self.failures = 0
        self.next_attempt_at = 0.0
        self._in_flight: Optional[asyncio.Future] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def allow(self) -> bool:
        return self._clock() >= self.next_attempt_at

    def record_success(self) -> None:
        self.failures = 0
        self.next_attempt_at = 0.0

    def record_failure(self) -> float:
        self.failures += 1
        delay = backoff_delay(self.failures, self.base_backoff, self.max_backoff)
        self.next_attempt_at = self._clock() + delay
        logger.warning("circuit_backoff name=%s failures=%s delay=%.1f", self.name, self.failures, delay)
        return delay

    def reset(self) -> None:
        self.record_success()

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Raises:
            CircuitOpen: backoff en cours
            Exception: l'erreur de `operation` (déjà comptée comme échec)
        """
        if self.in_flight:
            return await asyncio.shield(self._in_flight)
        if not self.allow():
            raise CircuitOpen(f"{self.name} backing off")

        future = asyncio.ensure_future(operation())
        self._in_flight = future
        try:
            result = await asyncio.shield(future)
        except Exception:
            self.record_failure()
            raise
        finally:
            if self._in_flight is future:
                self._in_flight = None
        self.record_success()
        return result
