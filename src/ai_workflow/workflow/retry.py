"""Retry and backoff policy for queued jobs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from ai_workflow.workflow.models import FailureClass

RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.RATE_LIMITED,
        FailureClass.PROVIDER_TRANSIENT,
        FailureClass.NETWORK,
    },
)


class RetryDecision(NamedTuple):
    retry: bool
    delay_seconds: int
    exhausted: bool


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Linear backoff: the n-th retry waits ``base_backoff_seconds * n``."""

    base_backoff_seconds: int = 120
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.base_backoff_seconds < 0:
            raise ValueError("base_backoff_seconds must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def next_delay(self, attempt: int, *, base_backoff_seconds: int | None = None) -> int:
        base = self.base_backoff_seconds if base_backoff_seconds is None else base_backoff_seconds
        return base * max(attempt, 1)

    def is_retryable(self, failure_class: FailureClass) -> bool:
        return failure_class in RETRYABLE_FAILURE_CLASSES

    def decide(
        self,
        *,
        attempt: int,
        failure_class: FailureClass,
        max_attempts: int | None = None,
        base_backoff_seconds: int | None = None,
        retry_after_seconds: int | None = None,
    ) -> RetryDecision:
        """Decide what happens after a failed attempt.

        ``attempt`` is the 1-based number of the attempt that just failed.
        Per-job ``max_attempts``/``base_backoff_seconds`` override the policy
        defaults.  A provider ``retry_after`` hint can only lengthen the delay.
        """

        limit = self.max_attempts if max_attempts is None else max_attempts
        if not self.is_retryable(failure_class):
            return RetryDecision(retry=False, delay_seconds=0, exhausted=False)
        if attempt >= limit:
            return RetryDecision(retry=False, delay_seconds=0, exhausted=True)
        delay = self.next_delay(attempt, base_backoff_seconds=base_backoff_seconds)
        if retry_after_seconds is not None and retry_after_seconds > delay:
            delay = retry_after_seconds
        return RetryDecision(retry=True, delay_seconds=delay, exhausted=False)
