"""
RETRY UTILITY
=============

Calls a function and, if it raises one of the retryable exceptions, tries
again a few times with exponential backoff. Used for Supermemory searches so a
network blip doesn't cost the assistant its documentation context.

The Moondream gateway deliberately does NOT use this: vision calls get exactly
one attempt and the model decides whether to call the tool again.

Example:
  results = with_retry(lambda: client.search(query), retry_on=(MemoryServiceError,))
"""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar


logger = logging.getLogger("PocketSenpai")

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Execute fn(). If it raises an exception listed in retry_on, wait initial_delay
    seconds and try again; the delay doubles each retry. After max_retries attempts
    (including the first) the last exception is re-raised. Anything not in
    retry_on propagates immediately, as does one that retry_if rejects.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    delay = initial_delay
    name = getattr(fn, "__name__", "call")

    for attempt in range(1, max_retries + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == max_retries or (retry_if is not None and not retry_if(e)):
                raise
            logger.warning(
                "Attempt %s/%s of %s failed, retrying in %.1fs: %s",
                attempt,
                max_retries,
                name,
                delay,
                e,
            )
            (sleep or time.sleep)(delay)
            delay *= 2

    # Unreachable: the loop either returns or raises.
    raise RuntimeError("with_retry exhausted without a result")
