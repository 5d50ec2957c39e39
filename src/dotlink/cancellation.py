"""Cooperative cancellation tokens passed to every filesystem call."""

from __future__ import annotations

import threading
import time

from .errors import OperationCancelledError


class CancelToken:
    """A thread-safe cancellation flag with an optional deadline and parent.

    A child token reports cancellation when either it or any ancestor has been
    cancelled, so a caller can stop a sub-task without cancelling its own work.
    """

    def __init__(self, *, deadline: float | None = None, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._parent = parent
        self._reason = "Operation cancelled"

    @classmethod
    def background(cls) -> CancelToken:
        """Return a token that is only cancelled explicitly."""

        return cls()

    @classmethod
    def with_timeout(cls, seconds: float, parent: CancelToken | None = None) -> CancelToken:
        return cls(deadline=time.monotonic() + seconds, parent=parent)

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("Operation timed out")
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self._reason)
