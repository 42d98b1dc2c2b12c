from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

_log = logging.getLogger("sdkvm.retry")

T = TypeVar("T")


def retry_call(
    func: Callable[[], T],
    *,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    jitter: bool = True,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `func` up to `attempts` times with exponential backoff.

    Only `exceptions` are retried, and only when `should_retry` (if given)
    accepts them. The last failure propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return func()
        except exceptions as e:
            if attempt >= attempts or (should_retry is not None and not should_retry(e)):
                raise

            wait = delay * (backoff ** (attempt - 1))
            if jitter:
                wait = wait * random.uniform(0.8, 1.2)

            _log.warning("attempt %d/%d failed: %s; retrying in %.2fs", attempt, attempts, e, wait)
            if on_retry is not None:
                on_retry(attempt, e, wait)
            sleep(wait)
            attempt += 1
