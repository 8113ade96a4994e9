"""Retry strategy for stage invocations and work orders.

Exponential backoff capped at ``max_delay``; the retry loop itself is
tenacity's ``AsyncRetrying`` with an injectable sleep so tests never
wait, and a stop hook that lets a cancelled run give up between attempts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from pipeline_core.exceptions_unified import (
    PipelineException,
    RetryConfig,
    StageTimeoutError,
    describe_error,
)

logger = logging.getLogger(__name__)


# ── Strategy types ───────────────────────────────────────────────────


class RetryReason(str, Enum):
    """Why a retry was considered."""

    EXECUTION_FAILURE = "execution_failure"  # invocation raised
    TIMEOUT = "timeout"  # invocation exceeded its timeout
    CANCELLED = "cancelled"  # run was cancelled between attempts


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of ``RetryStrategy.decide``."""

    should_retry: bool
    reason: RetryReason
    attempt: int  # attempt that just failed (1-indexed)
    delay: float = 0.0  # seconds to wait before the next attempt
    message: str = ""


def is_retryable(exc: BaseException) -> bool:
    """Transient errors are retried; validation and other non-recoverable ones are not."""
    if isinstance(exc, PipelineException):
        return exc.is_recoverable
    return isinstance(exc, Exception)


def reason_for(exc: BaseException) -> RetryReason:
    if isinstance(exc, (StageTimeoutError, asyncio.TimeoutError)):
        return RetryReason.TIMEOUT
    return RetryReason.EXECUTION_FAILURE


# ── Strategy ─────────────────────────────────────────────────────────


@dataclass
class RetryStrategy:
    """``max_retries`` retries after the first attempt, exponential backoff.

    Delay before retry *n* (0-indexed) is
    ``min(base_delay * multiplier ** n, max_delay)`` seconds.
    """

    max_retries: int = 3
    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryStrategy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @property
    def total_max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int) -> float:
        """Delay in seconds after the 0-indexed *attempt* failed."""
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.multiplier,
        ).get_delay(attempt)

    def decide(
        self,
        attempt: int,
        reason: RetryReason,
        cancelled: bool = False,
    ) -> RetryDecision:
        """Decide whether to retry after *attempt* (1-indexed) failed."""
        if cancelled:
            return RetryDecision(
                should_retry=False,
                reason=RetryReason.CANCELLED,
                attempt=attempt,
                message="Run cancelled",
            )
        if attempt >= self.total_max_attempts:
            return RetryDecision(
                should_retry=False,
                reason=reason,
                attempt=attempt,
                message=f"Exhausted {self.max_retries} retries",
            )
        delay = self.backoff(attempt - 1)
        return RetryDecision(
            should_retry=True,
            reason=reason,
            attempt=attempt,
            delay=delay,
            message=f"Retry {attempt}/{self.max_retries} in {delay:g}s",
        )

    def retrying(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        should_stop: Optional[Callable[[], bool]] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> AsyncRetrying:
        """Build the tenacity retry loop.

        ``should_stop`` is polled after each failed attempt; when it
        returns True the last error is re-raised without further attempts.
        ``on_retry(attempt, error, delay)`` runs before each backoff sleep.
        """
        stop = stop_after_attempt(self.total_max_attempts)
        if should_stop is not None:
            stop = stop | (lambda _state: should_stop())

        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            if on_retry is not None and error is not None:
                on_retry(state.attempt_number, error, delay)
            else:
                logger.warning(
                    "Attempt %d failed (%s); retrying in %.1fs",
                    state.attempt_number, describe_error(error) if error else "unknown", delay,
                )

        return AsyncRetrying(
            sleep=sleep,
            stop=stop,
            wait=wait_exponential(
                multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            reraise=True,
        )
