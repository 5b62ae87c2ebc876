"""
Deadline-bounded polling used by every wait in the builder.
"""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from errors import WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Poll intervals and deadlines (seconds)
OPERATION_POLL_INTERVAL = 1.0
OPERATION_TIMEOUT = 300.0
PASSWORD_POLL_INTERVAL = 2.0
PASSWORD_TIMEOUT = 300.0
READY_POLL_INTERVAL = 10.0
CLEANUP_TIMEOUT = 30.0


def wait_for(
    check: Callable[[], Optional[T]],
    timeout: float,
    interval: float,
    description: str,
    cancel: Optional[threading.Event] = None,
) -> T:
    """
    Call ``check`` until it returns a value other than None.

    Args:
        check: Callable returning None while the condition is not met
        timeout: Overall deadline in seconds
        interval: Sleep between attempts in seconds
        description: What is being waited for (used in the timeout message)
        cancel: Optional event that aborts the wait when set

    Returns:
        The first non-None value returned by ``check``

    Raises:
        ValueError: If timeout is not positive
        WaitTimeoutError: If the deadline passes or the wait is cancelled
    """
    if timeout <= 0:
        raise ValueError(f"timeout for {description} must be greater than 0")

    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise WaitTimeoutError(f"Cancelled while waiting for {description}")

        attempt += 1
        result = check()
        if result is not None:
            return result

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitTimeoutError(
                f"Timed out after {timeout:.0f}s waiting for {description}"
            )
        logger.debug(
            f"Still waiting for {description} (attempt {attempt}, {remaining:.0f}s left)"
        )
        time.sleep(min(interval, remaining))
