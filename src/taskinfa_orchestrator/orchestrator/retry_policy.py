"""Retry budget and circuit-breaker decisions."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """What happens to a task after a failed session."""

    error_count: int
    retry: bool

    @property
    def exhausted(self) -> bool:
        return not self.retry


def is_exhausted(error_count: int, max_retries: int) -> bool:
    """A task with `error_count >= max_retries` is never selected again."""

    return error_count >= max_retries


def decide_after_failure(error_count: int, max_retries: int) -> RetryDecision:
    """Decide from the already incremented error count."""

    return RetryDecision(
        error_count=error_count,
        retry=not is_exhausted(error_count, max_retries),
    )
