"""
Job execution logger: persists run history of externally scheduled jobs.

The scheduler itself lives outside this service.  It calls a pipeline entry
point and records the outcome here, either explicitly via
``log_job_execution`` or by wrapping the call in ``track_job``.

Logging is best-effort: a storage failure is logged as a warning and never
propagates into the job that was being recorded.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from backend.models import JobExecution

logger = logging.getLogger(__name__)

JOB_STATUSES = ("success", "partial", "failed")


def log_job_execution(
    db: Session,
    job_name: str,
    status: str,
    started_at: datetime,
    completed_at: Optional[datetime] = None,
    error: Optional[str] = None,
    metadata: Optional[Dict] = None,
) -> Optional[int]:
    """Insert a JobExecution row.  Returns its id, or None if logging failed."""
    if status not in JOB_STATUSES:
        logger.warning("Unknown job status %r for %s, recording as failed", status, job_name)
        status = "failed"

    duration_ms = None
    if completed_at is not None:
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)

    try:
        row = JobExecution(
            job_name=job_name,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            error=error,
            job_metadata=metadata,
        )
        db.add(row)
        db.commit()
        return row.id
    except Exception as exc:
        logger.warning("Could not log job execution for %s: %s", job_name, exc)
        db.rollback()
        return None


@contextmanager
def track_job(db: Session, job_name: str) -> Iterator[Dict]:
    """
    Time a job and record its outcome.

    The yielded dict is stored as the row's metadata; set ``"status"`` in it
    to ``"partial"`` to record a degraded run.  Exceptions are recorded as
    ``failed`` and re-raised.

    Usage::

        with track_job(db, "refresh_recommended_bets") as meta:
            bets = aggregator.get_recommended_bets("basketball_ncaab", 20)
            meta["count"] = len(bets)
    """
    started = datetime.utcnow()
    t0 = time.perf_counter()
    meta: Dict = {}
    try:
        yield meta
    except Exception as exc:
        log_job_execution(
            db, job_name, "failed", started, datetime.utcnow(),
            error=str(exc), metadata=meta or None,
        )
        raise
    status = meta.pop("status", "success")
    log_job_execution(
        db, job_name, status, started, datetime.utcnow(), metadata=meta or None
    )
    logger.info(
        "Job %s finished (%s) in %.0f ms",
        job_name, status, (time.perf_counter() - t0) * 1000,
    )


def _serialize(job: JobExecution) -> Dict:
    return {
        "id": job.id,
        "job_name": job.job_name,
        "status": job.status,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "duration_ms": job.duration_ms,
        "error": job.error,
        "metadata": job.job_metadata,
    }


def get_recent_job_executions(
    db: Session, limit: int = 50, job_name: Optional[str] = None
) -> List[Dict]:
    """Most recent executions first; ``[]`` if the store cannot be read."""
    try:
        query = db.query(JobExecution)
        if job_name:
            query = query.filter(JobExecution.job_name == job_name)
        jobs = query.order_by(JobExecution.started_at.desc()).limit(limit).all()
    except Exception as exc:
        logger.warning("Could not read job executions: %s", exc)
        return []
    return [_serialize(j) for j in jobs]
