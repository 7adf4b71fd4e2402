# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    """
    Engine knobs. Defaults come from the environment:

      FLOWGATE_WORKERS         max parallel job instances
      FLOWGATE_GRACE_SECONDS   how long a cancelled job may take to stop
      FLOWGATE_STEP_RETRIES    transport error retries per step
      FLOWGATE_RETRY_BACKOFF   first retry delay (doubles each attempt)
      FLOWGATE_DATABASE_URL    run archive database
      FLOWGATE_RUN_HISTORY     finished runs kept in memory (0 keeps all)
    """
    workers: int = field(default_factory=lambda: _env_int("FLOWGATE_WORKERS", _default_workers()))
    grace_period: float = field(default_factory=lambda: _env_float("FLOWGATE_GRACE_SECONDS", 30.0))
    step_retries: int = field(default_factory=lambda: _env_int("FLOWGATE_STEP_RETRIES", 2))
    retry_backoff: float = field(default_factory=lambda: _env_float("FLOWGATE_RETRY_BACKOFF", 0.5))
    database_url: str = field(
        default_factory=lambda: os.environ.get("FLOWGATE_DATABASE_URL", "sqlite:///.flowgate/runs.db")
    )
    run_history: int = field(default_factory=lambda: _env_int("FLOWGATE_RUN_HISTORY", 100))
