# aegis/services/cancel.py
import threading
import time
from typing import Optional

from aegis.errors import AuditTimeoutError


class CancelToken:
    """
    Cancellable wait shared by the polling loops.

    A token may carry a deadline (seconds from creation). ``wait`` sleeps at
    most ``seconds`` and returns True as soon as the token is cancelled or the
    deadline passes, so an outer timeout can interrupt an in-flight poll.
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

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        if self.cancelled:
            return True
        rem = self.remaining()
        if rem is not None:
            seconds = min(seconds, rem)
        if seconds > 0:
            self._event.wait(seconds)
        return self.cancelled

    def sleep_or_raise(self, seconds: float, what: str = "operation") -> None:
        if self.wait(seconds):
            raise AuditTimeoutError(f"{what} cancelled or deadline expired")

    def bound(self, timeout: float) -> float:
        """Clamp a per-request timeout to what is left of the deadline."""
        rem = self.remaining()
        if rem is None:
            return timeout
        return max(0.1, min(timeout, rem))
