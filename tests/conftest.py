"""
Pytest configuration and shared fixtures.

FakeRunner stands in for the external step runner: each step's `run` string
selects a behavior (exit code, exception, or callable).
"""
from __future__ import annotations

import threading
import time
from dataclasses import replace

import pytest

from flowgate.engine import prepare_run
from flowgate.model import RunContext
from flowgate.scheduler import Scheduler
from flowgate.settings import Settings
from flowgate.sinks import MemorySink, Reporter
from flowgate.steps import StepResult


class FakeRunner:
    def __init__(self, behaviors=None, default=0):
        self.behaviors = dict(behaviors or {})
        self.default = default
        self.calls = []
        self.envs = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def run(self, step, token):
        with self._lock:
            self.calls.append(step.run)
            self.envs.append(dict(step.env))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            behavior = self.behaviors.get(step.run, self.default)
            if callable(behavior):
                return behavior(step, token)
            if isinstance(behavior, Exception):
                raise behavior
            return StepResult(exit_status=behavior, duration=0.0)
        finally:
            with self._lock:
                self.active -= 1


def sleeps(seconds, exit_status=0):
    """A step that honours cancellation while it waits."""
    def behavior(step, token):
        if token.wait(seconds):
            return StepResult(exit_status=-15, duration=seconds, cancelled=True)
        return StepResult(exit_status=exit_status, duration=seconds)
    return behavior


def stubborn(seconds):
    """A step that ignores cancellation entirely."""
    def behavior(step, token):
        time.sleep(seconds)
        return StepResult(exit_status=0, duration=seconds)
    return behavior


def blocks_until(event, timeout=5.0):
    def behavior(step, token):
        deadline = time.monotonic() + timeout
        while not event.is_set() and time.monotonic() < deadline:
            if token.wait(0.01):
                return StepResult(exit_status=-15, duration=0.0, cancelled=True)
        return StepResult(exit_status=0, duration=0.0)
    return behavior


@pytest.fixture
def settings():
    return Settings(
        workers=4,
        grace_period=0.2,
        step_retries=2,
        retry_backoff=0.01,
        database_url="sqlite://",
    )


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def run_spec(settings, sink):
    """Prepare and synchronously schedule a workflow; returns the finished run."""
    def _run(spec, runner, context=None, **overrides):
        cfg = replace(settings, **overrides)
        run = prepare_run(spec, context or RunContext())
        Scheduler(runner, cfg, reporter=Reporter([sink]), tick=0.01).run(run)
        return run
    return _run
