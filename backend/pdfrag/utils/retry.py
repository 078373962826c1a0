"""Retry policy with exponential backoff and jitter.

One policy object serves the embedding gateway and the LLM call. Only transient
failures are retried; anything else propagates on the first attempt.
"""

import asyncio
import random
import re
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import openai

from backend.pdfrag.errors import RetryExhaustedError, TransientProviderError
from backend.pdfrag.utils.logging import StructuredRagLogger
from backend.pdfrag.utils.metrics import RagMetrics

T = TypeVar("T")

RETRIABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

RETRIABLE_MESSAGES = (
    "resource exhausted",
    "deadline exceeded",
    "service unavailable",
    "failed to fetch",
)

_STATUS_IN_MESSAGE = re.compile(r"\b(429|500|502|503|504)\b")


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_transient_error(exc: BaseException) -> bool:
    """Return True for rate limits, 5xx responses and network failures."""
    if isinstance(exc, (TransientProviderError, openai.APIConnectionError, httpx.TransportError)):
        return True

    status = _status_code(exc)
    if status is not None:
        return status in RETRIABLE_STATUS_CODES

    message = str(exc).lower()
    if any(marker in message for marker in RETRIABLE_MESSAGES):
        return True
    return bool(_STATUS_IN_MESSAGE.search(message))


def as_transient(exc: Exception, *, stage: str) -> Exception:
    """Translate a retriable provider failure into TransientProviderError.

    Non-retriable errors are returned unchanged so the caller can re-raise them.
    """
    if isinstance(exc, TransientProviderError) or not is_transient_error(exc):
        return exc
    return TransientProviderError(str(exc), status_code=_status_code(exc), stage=stage)


def _reason(exc: BaseException) -> str:
    status = _status_code(exc)
    return str(status) if status is not None else type(exc).__name__


class RetryPolicy:
    """Bounded exponential backoff with +/- jitter.

    Delay before retry n (0-based) is ``min(max_delay, initial * 2**n)`` scaled by a
    random factor in ``[1 - jitter, 1 + jitter]`` and capped again at ``max_delay``.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        initial_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        jitter: float = 0.2,
        is_retriable: Callable[[BaseException], bool] = is_transient_error,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
        metrics: RagMetrics | None = None,
        logger: StructuredRagLogger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter = jitter
        self.is_retriable = is_retriable
        self._sleep = sleep_fn or asyncio.sleep
        self._rng = rng or random.Random()
        self._metrics = metrics or RagMetrics()
        self._logger = logger or StructuredRagLogger()

    def delay_ms(self, retry_number: int) -> float:
        """Backoff delay before the given retry (0-based)."""
        base = min(self.max_delay_ms, self.initial_delay_ms * (2**retry_number))
        factor = self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        return min(float(self.max_delay_ms), base * factor)

    async def call(self, fn: Callable[[], Awaitable[T]], *, operation: str) -> T:
        """Run fn, retrying transient failures.

        Raises:
            RetryExhaustedError: If every attempt failed with a transient error
            Exception: Any non-retriable error, unchanged, on first occurrence
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except Exception as e:
                if not self.is_retriable(e):
                    raise
                if attempt == self.max_attempts:
                    raise RetryExhaustedError(
                        f"{operation} failed after {attempt} attempts: {e}",
                        attempts=attempt,
                        stage=operation,
                    ) from e

                delay = self.delay_ms(attempt - 1)
                self._metrics.inc_retry(operation, _reason(e))
                self._logger.log_retry(operation, attempt, delay, e)
                await self._sleep(delay / 1000)

        # Unreachable: loop either returns or raises
        raise AssertionError("retry loop exited without result")
