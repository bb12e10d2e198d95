"""Cooperative cancellation for workflow runs."""

import threading
from typing import Optional

from .exceptions import WorkflowCancelledError


class CancellationToken:
    """One token per run, passed explicitly down every call chain.

    Checked at every suspension point: before a backend call and on both
    sides of a backoff sleep. ``sleep`` itself wakes as soon as the token
    is signaled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Workflow cancelled by user.") -> None:
        """Signal cancellation. Idempotent."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise WorkflowCancelledError if the token has been signaled."""
        if self._event.is_set():
            raise WorkflowCancelledError(self._reason or "Workflow cancelled by user.")

    def sleep(self, seconds: float) -> bool:
        """
        Wait up to ``seconds``, returning early on cancellation.

        Returns:
            True if the token was signaled while waiting
        """
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=seconds)

    def sleep_or_raise(self, seconds: float) -> None:
        """Sleep like ``sleep``, raising WorkflowCancelledError if signaled before or during the wait."""
        self.raise_if_cancelled()
        self.sleep(seconds)
        self.raise_if_cancelled()
