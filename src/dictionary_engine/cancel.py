"""Cooperative cancellation and overall deadlines."""

from __future__ import annotations

import threading
import time

from dictionary_engine.exceptions import OperationCancelledError


class CancelToken:
    """A cancellation signal shared between the caller and a long operation.

    ``timeout`` (seconds) sets an overall deadline; once it passes, the
    token reports itself cancelled exactly as if :meth:`cancel` had been
    called.  Operations poll :meth:`check` at chunk boundaries.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = (
            time.monotonic() + timeout if timeout is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self) -> None:
        """Raise :class:`OperationCancelledError` if cancelled or expired."""
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise OperationCancelledError("Operation deadline exceeded")


def check_cancelled(token: CancelToken | None) -> None:
    if token is not None:
        token.check()
