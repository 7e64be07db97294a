# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/utils/poller.py

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from ..errors import TimeoutFailure

log = logging.getLogger("clusterbed")

T = TypeVar("T")

FIXED_BACKOFF_S = 0.5


class Deadline:
    """
    Cancellation token with a wall-clock budget.

    Threaded through every polling loop; once expired (or cancelled) the
    loops stop and surface a TimeoutFailure.
    """

    def __init__(self, expires_at: Optional[float], *, clock: Callable[[], float] = time.monotonic):
        self._expires_at = expires_at
        self._clock = clock
        self._cancelled = False

    @classmethod
    def after(cls, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(clock() + seconds, clock=clock)

    @classmethod
    def never(cls, *, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(None, clock=clock)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        if self._cancelled:
            return True
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())


def wait_until(
    deadline: Deadline,
    fetch: Callable[[], Optional[T]],
    predicate: Callable[[T], Optional[str]],
    *,
    what: str = "condition",
    interval: float = FIXED_BACKOFF_S,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Poll *fetch* until *predicate* accepts its result.

    predicate returns None when satisfied, otherwise a reason string.
    Errors from fetch (of the retry_on types), a None result and predicate
    reasons are kept as the latest failure; the loop then sleeps a fixed
    interval. There is no retry cap: the deadline is the only budget.

    Returns the accepted value; raises TimeoutFailure embedding the last
    failure reason once the deadline expires.
    """
    last: str = "deadline expired before first attempt"
    attempts = 0
    while not deadline.expired:
        attempts += 1
        try:
            value = fetch()
        except retry_on as exc:
            last = f"{type(exc).__name__}: {exc}"
        else:
            if value is None:
                last = f"nil response to {what} check"
            else:
                reason = predicate(value)
                if reason is None:
                    log.debug("[poll] %s satisfied after %d attempt(s)", what, attempts)
                    return value
                last = reason
        log.debug("[poll] %s not ready (attempt %d): %s", what, attempts, last)
        sleep(interval)

    raise TimeoutFailure(f"error checking {what}: {last}")
