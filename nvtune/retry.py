"""
NVTune - Error Recovery

Bounded retry with exponential backoff for hardware writes, and error
context for user-facing messages.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from .backend import ApplyFailed, GpuHandle, QueryFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry an operation a fixed number of times.

    The delay before retry n (1-based) is base_delay_s * 2**(n-1).
    Only errors listed in `retry_on` are retried; anything else propagates
    immediately.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_s: float = 0.1,
        retry_on: Tuple[Type[Exception], ...] = (ApplyFailed, QueryFailed),
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.retry_on = retry_on
        self._sleep = sleep

    def call(self, operation: Callable[..., T], *args, **kwargs) -> T:
        attempt = 0
        while True:
            try:
                return operation(*args, **kwargs)
            except self.retry_on as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up after {attempt} attempts: {e}")
                    raise

                delay = self.base_delay_s * 2 ** (attempt - 1)
                logger.warning(f"Attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
                self._sleep(delay)


@dataclass
class ErrorContext:
    """What was being done when an error happened, and what to try next."""
    operation: str
    gpu: Optional[GpuHandle] = None
    suggestion: str = ""

    def to_user_message(self, error: Exception) -> str:
        msg = f"Failed to {self.operation}: {error}"
        if self.gpu is not None:
            msg += f" (GPU {self.gpu})"
        if self.suggestion:
            msg += f"\n\nSuggestion: {self.suggestion}"
        return msg
