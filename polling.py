"""Bounded polling and retry loops.

Both loops take an injectable ``sleep`` so they can be driven without
real waiting. Neither knows anything about the thing being waited on:
the caller's step/attempt function decides what a status means.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class PollState(str, Enum):
    PENDING = "pending"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = {PollState.SUCCEEDED, PollState.FAILED, PollState.TIMED_OUT}


@dataclass
class PollOutcome:
    state: PollState
    value: Any = None
    attempts: int = 0


class BoundedPoller:
    """Call ``step`` every ``interval`` seconds, at most ``max_attempts`` times.

    ``step`` returns ``(state, value)``. A SUCCEEDED or FAILED state ends the
    loop; anything else keeps polling. Running out of attempts ends in
    TIMED_OUT carrying the last value seen.
    """

    def __init__(self, interval: float, max_attempts: int, sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.state = PollState.PENDING

    def run(self, step: Callable[[], Tuple[PollState, Any]]) -> PollOutcome:
        value = None
        for attempt in range(1, self.max_attempts + 1):
            self.state = PollState.POLLING
            state, value = step()
            if state in (PollState.SUCCEEDED, PollState.FAILED):
                self.state = state
                return PollOutcome(state, value, attempt)
            if attempt < self.max_attempts:
                self._sleep(self.interval)

        self.state = PollState.TIMED_OUT
        logger.warning("poll_timed_out", attempts=self.max_attempts, interval=self.interval)
        return PollOutcome(PollState.TIMED_OUT, value, self.max_attempts)


def retry_with_backoff(
    fn: Callable[[], Any],
    retries: int = 3,
    base_delay: float = 2.0,
    is_retryable: Callable[[Exception], bool] = lambda exc: True,
    delay_for: Optional[Callable[[Exception, int], Optional[float]]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """Run ``fn`` up to ``retries`` times with exponential backoff.

    ``delay_for(exc, attempt)`` may return a fixed delay for particular
    errors; otherwise the wait is ``base_delay * 2 ** (attempt - 1)``.
    The last error is re-raised once attempts run out, and non-retryable
    errors are re-raised immediately.
    """
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt == retries or not is_retryable(exc):
                raise
            wait = delay_for(exc, attempt) if delay_for else None
            if wait is None:
                wait = base_delay * 2 ** (attempt - 1)
            logger.info("retrying_after_error", attempt=attempt, wait=wait, error=str(exc))
            sleep(wait)
