"""
Cooperative cancellation for maintenance sweeps.

Sweeps check the token between chunks; a host shutting down calls
``cancel()`` and waits for the running job to return its partial result.
"""

from __future__ import annotations

import threading
from typing import Optional

from .exceptions import OperationCancelledError


class CancellationToken:
    """Thread-safe cancellation flag backed by ``threading.Event``."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise OperationCancelledError(operation)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; returns the flag."""
        return self._event.wait(timeout)


def check_cancelled(token: Optional[CancellationToken], operation: str) -> None:
    """No-op when ``token`` is None."""
    if token is not None:
        token.raise_if_cancelled(operation)
