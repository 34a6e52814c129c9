"""
Retry and backoff policy.

A single policy object shared by every call site that retries: model
invocations and ledger write conflicts.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import GenerationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff.

    The delay before retry ``n`` (attempts numbered from 1) is
    ``initial_delay * multiplier ** (n - 1)``, so the defaults wait
    2s, 4s, 8s, ...

    Attributes:
        max_attempts: Total attempts, including the first one
        initial_delay: Seconds to wait after the first failed attempt
        multiplier: Growth factor applied per further attempt
        retry_on: Exception types eligible for retry
        is_retryable: Optional extra predicate applied to matching exceptions
        sleep: Waits for the given delay; receives the cancel event, if any
    """
    max_attempts: int = 3
    initial_delay: float = 2.0
    multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    is_retryable: Optional[Callable[[BaseException], bool]] = None
    sleep: Optional[Callable[[float, Optional[threading.Event]], None]] = field(default=None, compare=False)

    def __post_init__(self):
        """Validate policy bounds."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given failed attempt (1-based)."""
        return self.initial_delay * (self.multiplier ** (attempt - 1))

    def should_retry(self, error: BaseException) -> bool:
        if not isinstance(error, self.retry_on):
            return False
        if self.is_retryable is not None:
            return self.is_retryable(error)
        return True

    def run(
        self,
        func: Callable[[], T],
        cancel_event: Optional[threading.Event] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None
    ) -> T:
        """Call ``func`` until it succeeds or the policy gives up.

        Args:
            func: Zero-argument callable to attempt
            cancel_event: When set, backoff is interrupted and no further
                attempt is made
            on_retry: Called with (attempt, error, delay) before each wait

        Returns:
            Whatever ``func`` returns

        Raises:
            GenerationCancelled: If ``cancel_event`` is set before or during backoff
            Exception: The last error from ``func`` when it is not retryable
                or attempts are exhausted
        """
        attempt = 1
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled("cancelled before attempt")
            try:
                return func()
            except self.retry_on as error:
                if not self.should_retry(error) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, error, delay)
                self._wait(delay, cancel_event)
                attempt += 1

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if self.sleep is not None:
            self.sleep(delay, cancel_event)
        elif cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Backoff interrupted by cancellation")
            raise GenerationCancelled("cancelled during backoff")
