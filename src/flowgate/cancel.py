# cancel.py
from __future__ import annotations

import threading
from typing import List, Optional


class CancelToken:
    """
    Cooperative cancellation signal passed to step runners.

    Cancelling a token cancels all of its children; a child can be cancelled
    on its own (job timeout, fail-fast) without touching the parent.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List[CancelToken] = []
        self.reason: str | None = None
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelToken") -> None:
        with self._lock:
            self._children.append(child)
            already = self._event.is_set()
        if already:
            child.cancel(self.reason)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason or "cancelled"
            self._event.set()
            children = list(self._children)
        for c in children:
            c.cancel(self.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to `timeout`; returns True early if cancelled."""
        return self._event.wait(timeout)
