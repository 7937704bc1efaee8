"""Retry policy for pipeline stage calls.

Only ``StageError`` instances flagged ``retryable`` are retried; everything
else propagates on the first attempt. Back-off sleeps wait on an optional
cancel event so a timed-out job stops retrying immediately.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from knowio.errors import JobTimeoutError, StageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, StageError) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential back-off around a single callable.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying).
        base_delay: Sleep before the first retry, in seconds; doubles each time.
        max_delay: Cap for a single sleep.
    """

    max_retries: int = 3
    base_delay: float = 5.0
    max_delay: float = 60.0

    def call(
        self,
        fn: Callable[[], T],
        *,
        cancel: threading.Event | None = None,
        retry_on: Callable[[BaseException], bool] = is_retryable,
    ) -> T:
        """Run *fn* until it succeeds, fails non-retryably, or attempts run out.

        The last exception is re-raised unchanged. If *cancel* is set during a
        back-off sleep, ``JobTimeoutError`` is raised instead.
        """
        retryer = Retrying(
            stop=stop_after_attempt(max(self.max_retries, 0) + 1),
            wait=wait_exponential(
                multiplier=self.base_delay, min=self.base_delay, max=self.max_delay
            ),
            retry=retry_if_exception(retry_on),
            sleep=_interruptible_sleep(cancel),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(fn)


def _interruptible_sleep(cancel: threading.Event | None) -> Callable[[float], None]:
    def _sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
            return
        if cancel.wait(seconds):
            raise JobTimeoutError("cancelled during retry back-off")

    return _sleep
