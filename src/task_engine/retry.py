import random
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from task_engine.domain.task import RetryPolicy, RetryState

DEFAULT_MAX_BACKOFF = timedelta(hours=1)
DEFAULT_JITTER = 0.2


class RetryDecision(BaseModel):
    """
    Outcome of a failed attempt: either retry after `delay`, or the chain is exhausted.
    """
    retry: bool
    attempt_number: int = Field(..., description="The attempt that just failed")
    delay: Optional[timedelta] = None

    @property
    def exhausted(self) -> bool:
        return not self.retry


class RetryCoordinator:
    """
    Retry decisions and bounded exponential backoff.

    The arithmetic is local and stateless; the attempt chain itself lives on
    the task as a RetryState so that it survives restarts.
    """

    def __init__(
        self,
        max_backoff: timedelta = DEFAULT_MAX_BACKOFF,
        jitter: float = DEFAULT_JITTER,
        rng: Optional[random.Random] = None,
    ):
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.max_backoff = max_backoff
        self.jitter = jitter
        self._rng = rng or random.Random()

    def compute_backoff(self, policy: RetryPolicy, attempt_number: int) -> timedelta:
        """
        base_backoff * multiplier ** (attempt_number - 1), capped at max_backoff. No jitter.
        """
        exponent = max(0, attempt_number - 1)
        try:
            seconds = policy.base_backoff.total_seconds() * (policy.multiplier ** exponent)
        except OverflowError:
            return self.max_backoff
        # Compared as floats: timedelta itself overflows long before the float does.
        if seconds >= self.max_backoff.total_seconds():
            return self.max_backoff
        return timedelta(seconds=max(0.0, seconds))

    def on_failure(self, policy: Optional[RetryPolicy], attempt_number: int) -> RetryDecision:
        """
        Decide what happens after attempt `attempt_number` failed.

        Args:
            policy: The task's retry policy; without one every failure is terminal.
            attempt_number: 1-based number of the attempt that failed.

        Returns:
            RetryDecision: retry with a jittered delay, or exhausted.
        """
        if policy is None or attempt_number >= policy.max_attempts:
            return RetryDecision(retry=False, attempt_number=attempt_number)

        delay = self.compute_backoff(policy, attempt_number)
        if self.jitter:
            factor = 1 + self._rng.uniform(-self.jitter, self.jitter)
            delay = min(delay * factor, self.max_backoff)
        return RetryDecision(retry=True, attempt_number=attempt_number, delay=delay)

    @staticmethod
    def next_state(
        current: Optional[RetryState],
        decision: RetryDecision,
        now: datetime,
        error: Optional[str] = None,
    ) -> Optional[RetryState]:
        """
        The RetryState to persist after a decision; None once the chain ends.
        """
        if decision.exhausted:
            return None
        next_attempt_at = now + decision.delay
        if current is None:
            return RetryState(attempt=decision.attempt_number, next_attempt_at=next_attempt_at, last_error=error)
        return current.model_copy(update={
            "attempt": decision.attempt_number,
            "next_attempt_at": next_attempt_at,
            "last_error": error,
        })
