from __future__ import annotations

from datetime import datetime, timezone
from typing import List

import sqlalchemy as sa
from sqlalchemy.orm import Session, selectinload, sessionmaker

from ..sinks import RUN_FINISHED, Event
from .db import make_session_factory
from .models import JobResultRecord, RunRecord


class ArchiveSink:
    """Reporting sink that stores every finalized run and its result table."""

    def __init__(self, database_url: str | None = None, session_factory: sessionmaker[Session] | None = None):
        if session_factory is None:
            if database_url is None:
                raise ValueError("ArchiveSink needs a database_url or a session_factory")
            session_factory = make_session_factory(database_url)
        self.sessions = session_factory

    def emit(self, event: Event) -> None:
        if event.kind != RUN_FINISHED:
            return

        data = event.data
        run = RunRecord(
            id=event.run_id,
            workflow=data.get("workflow", ""),
            status=data.get("status", ""),
            verdict=data.get("verdict", "fail"),
            event=data.get("event", ""),
            ref=data.get("ref", ""),
            actor=data.get("actor", ""),
            failing=list(data.get("failing", [])),
            finished_at=datetime.fromtimestamp(event.at, tz=timezone.utc),
        )
        for position, row in enumerate(data.get("jobs", [])):
            run.jobs.append(
                JobResultRecord(
                    position=position,
                    job=row["job"],
                    instance=row["instance"],
                    result=row["result"],
                    required=bool(row["required"]),
                    reason=row.get("reason") or "",
                    duration=row.get("duration"),
                )
            )

        with self.sessions() as s:
            with s.begin():
                s.add(run)

    def list_runs(self, limit: int = 50) -> List[RunRecord]:
        q = (
            sa.select(RunRecord)
            .options(selectinload(RunRecord.jobs))
            .order_by(RunRecord.finished_at.desc())
            .limit(limit)
        )
        with self.sessions() as s:
            return list(s.scalars(q))
