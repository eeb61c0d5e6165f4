"""Module with a cancellation signal that is shared by the steps of a reconcile pass."""

from __future__ import annotations

import threading
import time
from typing import Optional


class Cancelled(Exception):
    """Exception raised when work is abandoned because of cancellation or a deadline."""


class CancelToken:
    """
    Thread-safe cancellation signal with an optional deadline.

    A token is handed to every potentially long-running call. The call should
    periodically check the token and abandon its work (cleaning up after itself) once
    it has been cancelled or its deadline has passed.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        """Instantiate a token that expires after the given number of seconds."""
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        """Cancel the work associated with this token."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return whether the token has been cancelled or has expired."""
        return self._event.is_set() or self.remaining == 0.0

    @property
    def remaining(self) -> Optional[float]:
        """Return the number of seconds left until the deadline, if there is one."""
        if self._deadline is None:
            return None

        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise Cancelled if the token has been cancelled or has expired."""
        if self._event.is_set():
            raise Cancelled("operation cancelled")
        elif self.remaining == 0.0:
            raise Cancelled("operation deadline exceeded")

    def child(self, timeout: Optional[float] = None) -> CancelToken:
        """
        Derive a token that is cancelled along with this one.

        The derived token may have a tighter deadline than its parent.
        """
        token = _ChildToken(self, timeout)

        remaining = self.remaining
        if remaining is not None and (timeout is None or remaining < timeout):
            token._deadline = time.monotonic() + remaining

        return token


class _ChildToken(CancelToken):
    """Token that also observes the cancellation of its parent."""

    def __init__(self, parent: CancelToken, timeout: Optional[float]) -> None:
        super().__init__(timeout)
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        return self._parent.cancelled or super().cancelled

    def check(self) -> None:
        self._parent.check()
        super().check()
