import threading
import time
from typing import Optional


class PlanningCancelled(Exception):
    """Raised when a planning run stops before producing a plan."""


class CancellationToken:
    """Cooperative cancellation flag checked by the planner between work units.

    Parameters
    ----------
    timeout:
        Optional number of seconds after which the token reports itself as
        cancelled.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PlanningCancelled("planning run was cancelled")
