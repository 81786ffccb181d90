"""
=====================================
Cooperative cancellation.
=====================================

A CancellationToken is threaded through one bulk operation. It is
checked before each SQL statement and before each record is pulled from
the caller's iterable. While a statement runs, a registered callback
(the psycopg2 connection's cancel()) aborts it on the server.

Example:
    >>> token = CancellationToken()
    >>> worker = threading.Thread(target=bulk_upsert, args=(engine, rows), kwargs={'cancel_token': token})
    >>> worker.start()
    >>> token.cancel()
"""

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List

from bulkmerge.core.exceptions import OperationCancelledError
from bulkmerge.core.logger import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Thread-safe, one-shot cancellation signal."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def __repr__(self):
        return f"CancellationToken(cancelled={self.cancelled})"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and invoke every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancel() has been called."""
        if self._event.is_set():
            raise OperationCancelledError("Bulk operation was cancelled")

    @contextmanager
    def register(self, callback: Callable[[], None]) -> Iterator[None]:
        """
        Register a callback invoked on cancel() while the block runs.

        A token that is already cancelled raises before the block starts.
        """
        self.raise_if_cancelled()
        with self._lock:
            self._callbacks.append(callback)
        try:
            yield
        finally:
            with self._lock:
                self._callbacks.remove(callback)
