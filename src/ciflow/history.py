from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import PipelineRun
from .report import RunReport


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    group_key: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    verdict: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    report: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)


class JobRecord(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    duration: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)
    failing_step: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    steps: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)


def _ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def create_history_engine(url: str) -> sa.Engine:
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            return sa.create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        db_path = url.split("sqlite:///", 1)[-1]
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return sa.create_engine(url, connect_args={"check_same_thread": False})
    return sa.create_engine(url, pool_pre_ping=True)


class RunHistory:
    """Persisted per-run job/step result log with a retention window."""

    def __init__(
        self,
        url: str = "sqlite://",
        *,
        retention: float = 30 * 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = create_history_engine(url)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        self.retention = retention
        self._clock = clock
        Base.metadata.create_all(self.engine)

    def record(self, run: PipelineRun, report: RunReport) -> None:
        with self.Session() as s:
            with s.begin():
                s.merge(
                    RunRecord(
                        id=run.id,
                        workflow=run.definition.name,
                        event=run.context.event,
                        ref=run.context.ref,
                        group_key=run.group_key,
                        verdict=report.verdict,
                        created_at=_ts(run.created_at),
                        finished_at=_ts(run.finished_at),
                        report=report.to_dict(),
                    )
                )
                s.execute(sa.delete(JobRecord).where(JobRecord.run_id == run.id))
                for job in report.jobs:
                    s.add(
                        JobRecord(
                            run_id=run.id,
                            job_name=job.name,
                            status=job.status,
                            duration=job.duration,
                            failing_step=job.failing_step,
                            reason=job.reason,
                            steps=job.steps,
                        )
                    )

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.Session() as s:
            row = s.get(RunRecord, run_id)
            if row is None:
                return None
            jobs = s.scalars(
                sa.select(JobRecord).where(JobRecord.run_id == run_id).order_by(JobRecord.id)
            ).all()
            out = self._row(row)
            out["report"] = row.report
            out["jobs"] = [
                {
                    "name": j.job_name,
                    "status": j.status,
                    "duration": j.duration,
                    "failing_step": j.failing_step,
                    "reason": j.reason,
                    "steps": j.steps,
                }
                for j in jobs
            ]
            return out

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.Session() as s:
            rows = s.scalars(
                sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)
            ).all()
            return [self._row(r) for r in rows]

    def prune(self, now: Optional[float] = None) -> int:
        """Delete runs older than the retention window. Returns how many were removed."""
        now = self._clock() if now is None else now
        cutoff = _ts(now - self.retention)
        with self.Session() as s:
            with s.begin():
                old_ids = s.scalars(sa.select(RunRecord.id).where(RunRecord.created_at < cutoff)).all()
                if not old_ids:
                    return 0
                s.execute(sa.delete(JobRecord).where(JobRecord.run_id.in_(old_ids)))
                s.execute(sa.delete(RunRecord).where(RunRecord.id.in_(old_ids)))
                return len(old_ids)

    @staticmethod
    def _row(row: RunRecord) -> Dict[str, Any]:
        return {
            "id": row.id,
            "workflow": row.workflow,
            "event": row.event,
            "ref": row.ref,
            "group": row.group_key,
            "verdict": row.verdict,
            "created_at": _iso(row.created_at),
            "finished_at": _iso(row.finished_at),
        }
