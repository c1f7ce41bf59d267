from __future__ import annotations

import threading
import time

from echcurl import exceptions


class DialContext:
    """
    Carries the deadline and cancellation signal of one dial through the chain.

    Stages that block (Direct, Proxy, QUIC) consult it before and between
    blocking operations; stages that only rewrite or wrap pass it on unchanged.
    """

    def __init__(self, timeout: float | None = None):
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        """Seconds left until the deadline, None if there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def timeout(self, default: float | None) -> float | None:
        """The smaller of `default` and the time remaining."""
        remaining = self.remaining()
        if remaining is None:
            return default
        if default is None:
            return remaining
        return min(default, remaining)

    def check(self, stage: str = "direct", address=None) -> None:
        """
        *Raises:*
         - DialError, if the dial was cancelled or its deadline has passed.
        """
        if self.cancelled:
            raise exceptions.DialError("cancelled", stage, address)
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise exceptions.DialError("deadline exceeded", stage, address)
