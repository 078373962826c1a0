"""Structured logging for pipeline stages."""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class StructuredRagLogger:
    """Structured logger for retries, degradations and search strategies."""

    def log_retry(
        self, operation: str, attempt: int, delay_ms: float, error: BaseException
    ) -> None:
        """Log a transient failure that will be retried."""
        log_data: dict[str, Any] = {
            "operation": operation,
            "attempt": attempt,
            "delay_ms": round(delay_ms, 2),
            "error_type": type(error).__name__,
            "error": str(error)[:200],
        }
        logger.warning(
            f"Retrying {operation} after attempt {attempt} in {delay_ms:.0f}ms",
            extra={"structured": log_data},
        )

    def log_degraded(self, stage: str, reason: str, **fields: Any) -> None:
        """Log a degraded-but-continuable outcome."""
        log_data: dict[str, Any] = {"stage": stage, "reason": reason, **fields}
        logger.warning(f"Degraded {stage}: {reason}", extra={"structured": log_data})

    def log_search(self, strategy: str, matches: int, degraded: bool) -> None:
        """Log which search strategy answered and how many matches it found."""
        log_data: dict[str, Any] = {
            "strategy": strategy,
            "matches": matches,
            "degraded": degraded,
        }
        log_msg = f"Search via {strategy}: {matches} matches"

        if degraded:
            logger.warning(log_msg, extra={"structured": log_data})
        else:
            logger.info(log_msg, extra={"structured": log_data})
