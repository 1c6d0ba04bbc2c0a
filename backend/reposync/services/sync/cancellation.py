"""
Cooperative cancellation for sync operations.

A token is created with each asynchronous operation and passed explicitly
through the import pipeline. Nothing is preempted: the importer checks the
token between pages and stops there.
"""

import asyncio
from typing import Optional


class OperationCancelled(Exception):
    """Raised inside the import pipeline once its token has been cancelled."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "Operation cancelled")
        self.reason = reason


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Operation cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    def __repr__(self):
        return f"<CancellationToken cancelled={self.is_cancelled}>"
