"""
Cancellation token shared by timeout and explicit stop.
"""

import threading
from typing import Optional

from runbox.schemas import ExecutionState


class CancelToken:
    """
    One-shot, thread-safe cancellation flag carrying the terminal state that
    caused it. The first ``cancel`` wins; later calls keep the original reason.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[ExecutionState] = None

    def cancel(self, reason: ExecutionState) -> bool:
        """Cancel with ``reason``. Returns True if this call did the cancelling."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[ExecutionState]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)
