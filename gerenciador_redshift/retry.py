from __future__ import annotations

"""Whole-operation retry loop for transient database errors."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Union

from .errors import FatalDBError, TransientDBError

logger = logging.getLogger(__name__)
logger.propagate = True


@dataclass(frozen=True)
class Success:
    value: Any
    attempts: int

    def unwrap(self):
        return self.value


@dataclass(frozen=True)
class Exhausted:
    last_error: TransientDBError
    attempts: int

    def unwrap(self):
        raise FatalDBError(
            f"giving up after {self.attempts} attempts: {self.last_error}",
            getattr(self.last_error, "pgcode", None),
        ) from self.last_error


RetryResult = Union[Success, Exhausted]


def run_with_retry(
    operation: Callable[[], Any],
    max_attempts: int = 10,
    sleep: Callable[[float], None] = time.sleep,
    base_delay: float = 1.0,
) -> RetryResult:
    """Call *operation* until it succeeds or *max_attempts* is reached.

    Only :class:`TransientDBError` is retried; anything else propagates on
    the attempt that raised it.  The caller is expected to open a fresh
    transaction and re-read catalog state inside *operation*.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            return Success(operation(), attempt)
        except TransientDBError as e:
            last_error = e
            logger.warning(
                "Transient error on attempt %s/%s (%s): %s",
                attempt, max_attempts, e.pgcode, e,
            )
            if attempt < max_attempts:
                sleep(base_delay * attempt)
    return Exhausted(last_error, max_attempts)
