"""
Time budget and cancellation for a single run.
"""

import threading
import time
from typing import Optional

from .errors import OperationTimeout, OperationCancelled


class Deadline:
    """
    Caller-supplied time budget, checked between section boundaries and
    handed to subprocesses as their timeout.

    A timeout of None means unbounded.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._started = time.monotonic()
        self._cancel_event = cancel_event or threading.Event()

    @property
    def expires_at(self) -> Optional[float]:
        if self.timeout_seconds is None:
            return None
        return self._started + self.timeout_seconds

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded. Never negative."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def check(self, stage: str, offset: Optional[int] = None,
              section_index: Optional[int] = None) -> None:
        """Raise if the run was cancelled or ran out of time."""
        if self.cancelled:
            raise OperationCancelled(
                "Operation cancelled", stage=stage,
                offset=offset, section_index=section_index,
            )
        if self.expired:
            raise OperationTimeout(
                f"Operation exceeded {self.timeout_seconds:g}s timeout", stage=stage,
                offset=offset, section_index=section_index,
            )

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)
