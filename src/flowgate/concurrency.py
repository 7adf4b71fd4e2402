# concurrency.py
"""
Concurrency groups: at most one active holder per key.

A holder is a run id (workflow-level groups) or "<run id>/<job instance>"
(job-level groups). The key map is guarded by one lock used only to create and
drop slots; every slot carries its own condition so unrelated keys never
contend. A slot with neither holder nor queued holder is dropped.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .cancel import CancelToken
from .errors import ExpressionError, InvalidWorkflow
from .expressions import ExpressionScope, compile_expression
from .model import ConcurrencyPolicy, RunContext

log = logging.getLogger(__name__)

SupersededCallback = Callable[[str], None]


def resolve_policy(
    policy: ConcurrencyPolicy,
    context: RunContext,
    matrix: Dict[str, object] | None = None,
    job: str | None = None,
) -> tuple[str, bool]:
    """
    Turn a policy into (group key, cancel_in_progress) for one run/instance.

    The group template is formatted with the context fields and `matrix`,
    e.g. "{workflow}-{number}" or "deploy-{matrix[env]}".
    """
    try:
        key = policy.group.format(**context.as_dict(), matrix=matrix or {})
    except (KeyError, IndexError, ValueError) as e:
        raise InvalidWorkflow(
            f"Bad concurrency group template {policy.group!r}: {e}", job=job
        ) from e

    cancel = policy.cancel_in_progress
    if isinstance(cancel, str):
        try:
            scope = ExpressionScope(context=context, matrix=dict(matrix or {}))
            cancel = compile_expression(cancel).evaluate(scope)
        except ExpressionError as e:
            raise InvalidWorkflow(f"Bad cancel_in_progress expression: {e}", job=job) from e
    return key, bool(cancel)


@dataclass(frozen=True)
class AcquireResult:
    granted: bool
    superseded: str | None = None


@dataclass
class _Holder:
    id: str
    on_superseded: Optional[SupersededCallback] = None


class _Slot:
    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.holder: Optional[_Holder] = None
        self.queued: Optional[_Holder] = None


class ConcurrencyManager:
    def __init__(self) -> None:
        self._slots: Dict[str, _Slot] = {}
        self._slots_lock = threading.Lock()

    def _slot(self, key: str) -> _Slot:
        with self._slots_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            return slot

    def _existing(self, key: str) -> Optional[_Slot]:
        with self._slots_lock:
            return self._slots.get(key)

    def _discard_if_idle(self, key: str, slot: _Slot) -> None:
        # caller holds slot.cond
        if slot.holder is None and slot.queued is None:
            with self._slots_lock:
                if self._slots.get(key) is slot:
                    del self._slots[key]

    def acquire(
        self,
        key: str,
        holder_id: str,
        *,
        cancel_in_progress: bool = False,
        on_superseded: Optional[SupersededCallback] = None,
    ) -> AcquireResult:
        """
        Try to take `key` for `holder_id`.

        cancel_in_progress=True: the current holder (and any queued holder) is
        superseded and the key is granted immediately.
        cancel_in_progress=False: the caller is queued behind the holder; a
        newer queued caller supersedes an older queued one.
        """
        me = _Holder(holder_id, on_superseded)
        dropped: List[_Holder] = []

        while True:
            slot = self._slot(key)
            with slot.cond:
                if self._existing(key) is not slot:
                    # released and discarded between lookup and lock
                    continue
                if slot.holder is None or slot.holder.id == holder_id:
                    slot.holder = me
                    result = AcquireResult(granted=True)
                elif cancel_in_progress:
                    dropped.append(slot.holder)
                    if slot.queued is not None:
                        dropped.append(slot.queued)
                        slot.queued = None
                    slot.holder = me
                    result = AcquireResult(granted=True, superseded=dropped[0].id)
                else:
                    superseded = None
                    if slot.queued is not None and slot.queued.id != holder_id:
                        dropped.append(slot.queued)
                        superseded = slot.queued.id
                    slot.queued = me
                    result = AcquireResult(granted=False, superseded=superseded)
                slot.cond.notify_all()
                break

        for holder in dropped:
            log.info("concurrency group %r: %s superseded by %s", key, holder.id, holder_id)
            if holder.on_superseded is not None:
                holder.on_superseded(holder_id)
        return result

    def wait(
        self,
        key: str,
        holder_id: str,
        token: CancelToken | None = None,
        poll: float = 0.05,
    ) -> bool:
        """
        Block a queued holder until it is granted the key.

        Returns False if the holder was superseded while queued or its token
        was cancelled (the queue entry is dropped in that case).
        """
        slot = self._existing(key)
        if slot is None:
            return False
        with slot.cond:
            while True:
                if slot.holder is not None and slot.holder.id == holder_id:
                    return True
                if slot.queued is None or slot.queued.id != holder_id:
                    return False
                if token is not None and token.cancelled:
                    slot.queued = None
                    self._discard_if_idle(key, slot)
                    return False
                slot.cond.wait(poll)

    def release(self, key: str, holder_id: str) -> bool:
        """
        Clear the slot if `holder_id` still holds it and promote the queued holder.

        No-op (returns False) if the slot was already reassigned. A slot left
        with neither holder nor queued holder is forgotten.
        """
        slot = self._existing(key)
        if slot is None:
            return False
        with slot.cond:
            if slot.queued is not None and slot.queued.id == holder_id:
                slot.queued = None
                slot.cond.notify_all()
                self._discard_if_idle(key, slot)
                return False
            if slot.holder is None or slot.holder.id != holder_id:
                return False
            slot.holder = slot.queued
            slot.queued = None
            slot.cond.notify_all()
            self._discard_if_idle(key, slot)
            return True

    def holder(self, key: str) -> str | None:
        slot = self._existing(key)
        if slot is None:
            return None
        with slot.cond:
            return slot.holder.id if slot.holder else None

    def __len__(self) -> int:
        with self._slots_lock:
            return len(self._slots)

    def snapshot(self) -> Dict[str, Dict[str, str | None]]:
        with self._slots_lock:
            items = list(self._slots.items())
        out: Dict[str, Dict[str, str | None]] = {}
        for key, slot in items:
            with slot.cond:
                if slot.holder is None and slot.queued is None:
                    continue
                out[key] = {
                    "holder": slot.holder.id if slot.holder else None,
                    "queued": slot.queued.id if slot.queued else None,
                }
        return out
