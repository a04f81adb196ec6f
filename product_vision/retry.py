"""
Retry with exponential backoff for calls to remote bank stores.
"""

import logging
import os
import time
from typing import Callable, Tuple, Type

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import BankUnavailableError

logger = logging.getLogger(__name__)

RETRY_MAX_ATTEMPTS = int(os.environ.get("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY", "1.0"))


class RetryPolicy:
    """
    Retry a callable on transient errors.

    Delays grow as base_delay * multiplier ** (attempt - 1), capped at
    max_delay. Errors not listed in retry_on propagate immediately; the
    last transient error is re-raised once attempts run out.
    """

    def __init__(self,
                 max_attempts: int = RETRY_MAX_ATTEMPTS,
                 base_delay: float = RETRY_BASE_DELAY,
                 multiplier: float = 2.0,
                 max_delay: float = 8.0,
                 retry_on: Tuple[Type[BaseException], ...] = (BankUnavailableError,),
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.retry_on = retry_on
        self._sleep = sleep

    def _retryer(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay,
            ),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

    def call(self, fn: Callable, *args, **kwargs):
        try:
            return self._retryer()(fn, *args, **kwargs)
        except self.retry_on as e:
            logger.error(
                f"{getattr(fn, '__name__', fn)} failed after {self.max_attempts} attempts: {e}"
            )
            raise
