"""Cooperative cancellation for a run.

The same token is threaded through the Executor (checked before every
stage), the FanOutAggregator (checked before each unit starts) and the
CheckpointGate (checked while waiting), so cancelling from another thread
unblocks a suspended run deterministically.
"""

import threading

from phased_review.errors import RunCancelled


class CancellationToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self):
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or the timeout expires. Returns the flag."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, stage_id: str | None = None) -> None:
        """Raise RunCancelled if the token has been cancelled."""
        if self._event.is_set():
            message = "Run cancelled"
            if stage_id:
                message += f" at stage '{stage_id}'"
            if self._reason:
                message += f": {self._reason}"
            raise RunCancelled(message, stage_id=stage_id)
