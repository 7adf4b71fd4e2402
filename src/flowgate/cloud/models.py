from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    verdict: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False)
    failing: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    finished_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    jobs: Mapped[list["JobResultRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobResultRecord.position"
    )


class JobResultRecord(Base):
    __tablename__ = "job_results"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(32), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job: Mapped[str] = mapped_column(sa.Text, nullable=False)
    instance: Mapped[str] = mapped_column(sa.Text, nullable=False)
    result: Mapped[str] = mapped_column(sa.Text, nullable=False)
    required: Mapped[bool] = mapped_column(sa.Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    duration: Mapped[float | None] = mapped_column(sa.Float, nullable=True)

    run: Mapped[RunRecord] = relationship(back_populates="jobs")
