"""
Retry policy for optimistic-concurrency writes.

Replica counts and pod claims are written with resourceVersion-conditional
updates. A ConflictError means someone else changed the object between our
read and our write; re-running the read-modify-write is the fix, so that is
the only error retried here.
"""

import logging
from typing import Callable

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from ..errors import ConflictError

logger = logging.getLogger(__name__)


def create_conflict_retry(
    max_attempts: int = 5,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
) -> Callable:
    """
    Create a retry decorator for read-modify-write coroutines.

    Backoff doubles from ``min_wait`` up to ``max_wait``. After ``max_attempts``
    the last ConflictError is re-raised unchanged.

    Example:
        >>> @create_conflict_retry(max_attempts=3)
        ... async def bump():
        ...     deployment = await ops.get_deployment(ns, name)
        ...     deployment.spec.replicas += 1
        ...     await ops.update_deployment(ns, deployment)
    """
    return retry(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(ConflictError),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )
