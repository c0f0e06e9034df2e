"""
Cancellation context shared by every component of one backup run.

Exporters register their process so it gets terminated, and pipes register
so blocked readers and writers wake up with BackupCancelled.
"""

import logging
import threading
from typing import Callable, List

from autobackup.errors import BackupCancelled


logger = logging.getLogger(__name__)


class CancelContext:
    """Thread-safe cancellation flag with cancel callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """
        Request cancellation.

        Runs every registered callback once. Safe to call from a signal
        handler or another thread.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        logger.warning("Cancellation requested, stopping in-flight work")
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancel callback failed: {e}")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback to run on cancel.

        If the context is already cancelled the callback runs immediately.

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister

        callback()
        return lambda: None

    def raise_if_cancelled(self):
        """Raise BackupCancelled if cancellation was requested."""
        if self._event.is_set():
            raise BackupCancelled()
