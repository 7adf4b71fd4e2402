# sinks.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Protocol

from .ui.console import get_console

log = logging.getLogger(__name__)

# event kinds
RUN_STARTED = "run_started"
RUN_QUEUED = "run_queued"
JOB_STARTED = "job_started"
JOB_FINISHED = "job_finished"
RUN_FINISHED = "run_finished"


@dataclass(frozen=True)
class Event:
    kind: str
    run_id: str
    job: str | None = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)


class ReportingSink(Protocol):
    def emit(self, event: Event) -> None: ...


class Reporter:
    """Fans events out to sinks; a failing sink is logged and ignored."""

    def __init__(self, sinks: Iterable[ReportingSink] = ()):
        self.sinks: List[ReportingSink] = list(sinks)

    def emit(self, event: Event) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception:
                log.exception("reporting sink %r failed on %s", sink, event.kind)


class MemorySink:
    """Keeps every event in memory (tests, control plane run view)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[Event] = []

    def emit(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def kinds(self, run_id: str | None = None) -> List[str]:
        return [e.kind for e in self.events if run_id is None or e.run_id == run_id]


class ConsoleSink:
    """Prints run progress through the shared Console."""

    def emit(self, event: Event) -> None:
        console = get_console()
        if event.kind == RUN_STARTED:
            console.print_run_started(
                run_id=event.run_id,
                workflow=event.data.get("workflow", ""),
                job_count=event.data.get("instances", 0),
            )
        elif event.kind == RUN_QUEUED:
            console.print_info(f"RUN QUEUED: waiting for concurrency group {event.data.get('group')}")
        elif event.kind == JOB_STARTED:
            console.print_job_start(event.data.get("display", event.job or ""))
        elif event.kind == JOB_FINISHED:
            name = event.data.get("display", event.job or "")
            result = event.data.get("result")
            if result == "success":
                console.print_success(name)
            elif result == "skipped":
                console.print_job_skipped(name, event.data.get("reason", ""))
            elif result == "cancelled":
                console.print_job_cancelled(name, event.data.get("reason", ""))
            else:
                console.print_failure(name, event.data.get("reason", ""), is_job=True)
        elif event.kind == RUN_FINISHED:
            console.print_results(event.data.get("jobs", []), event.data.get("verdict", "fail"))
