from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import ErrorKind, ExchangeError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 20.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts debe ser >= 1")

    def delay(self, attempt: int, error: Optional[ExchangeError] = None) -> float:
        backoff = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            backoff += random.uniform(0, backoff * self.jitter)
        if (
            error is not None
            and error.kind is ErrorKind.RATE_LIMITED
            and error.retry_after is not None
        ):
            return max(backoff, error.retry_after)
        return backoff

    def run(
        self,
        operation: Callable[[], T],
        sleep: Callable[[float], None] = time.sleep,
        description: str = "",
        before_retry: Optional[Callable[[int, ExchangeError], Optional[T]]] = None,
    ) -> T:
        """Call ``operation`` until it succeeds or a non-transient error shows up.

        ``before_retry`` runs after the backoff and before each new attempt; a
        non-``None`` return value ends the loop with that value, and an
        exception it raises ends the loop with that exception.

        The error raised at the end reports how many attempts were made.
        """
        attempt = 1
        while True:
            try:
                return operation()
            except ExchangeError as exc:
                if not exc.is_transient:
                    raise exc.with_attempts(attempt) from exc.__cause__
                if attempt >= self.max_attempts:
                    LOGGER.error(
                        "%s: reintentos agotados tras %s intentos (%s).",
                        description or "request",
                        attempt,
                        exc.kind.name,
                    )
                    raise exc.with_attempts(attempt) from exc.__cause__
                delay = self.delay(attempt, exc)
                LOGGER.warning(
                    "%s: error %s. Reintentando en %.2fs (intento %s/%s).",
                    description or "request",
                    exc.kind.name,
                    delay,
                    attempt,
                    self.max_attempts,
                )
                sleep(delay)
                attempt += 1
                if before_retry is not None:
                    recovered = before_retry(attempt, exc)
                    if recovered is not None:
                        return recovered
