import logging
import random
import time
from typing import Callable, ParamSpec, TypeVar

from rollout.config import RetrySettings

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class RetryPolicy:
    """Exponential backoff with jitter for transient failures.

    Only exceptions listed in ``retryable`` are retried; anything else
    propagates on the first attempt. After ``max_attempts`` the last error
    is re-raised unchanged.
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        retryable: tuple[type[Exception], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings: RetrySettings = settings or RetrySettings()
        self.retryable: tuple[type[Exception], ...] = retryable
        self.sleep: Callable[[float], None] = sleep

    def calculate_delay(self, attempt: int) -> float:
        delay = min(
            self.settings.initial_delay_seconds * (self.settings.backoff_multiplier ** attempt),
            self.settings.max_delay_seconds,
        )
        if self.settings.jitter:
            # +/- 25%
            delay += random.uniform(-delay * 0.25, delay * 0.25)
        return max(delay, 0.0)

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        for attempt in range(self.settings.max_attempts):
            try:
                return func(*args, **kwargs)
            except self.retryable as e:
                remaining = self.settings.max_attempts - attempt - 1
                if remaining == 0:
                    logger.warning(f"Giving up after {self.settings.max_attempts} attempts: {e}")
                    raise
                delay = self.calculate_delay(attempt)
                logger.info(f"Attempt {attempt + 1}/{self.settings.max_attempts} failed ({e}), retrying in {delay:.2f}s")
                self.sleep(delay)
        raise RuntimeError("unreachable")

