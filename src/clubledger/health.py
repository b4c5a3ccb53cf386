"""Scheduler health tracking.

Every reconciliation sweep reports its outcome here, success or failure,
so an operator can see when each job last ran and whether it is failing.
Runs are persisted to the ``scheduler_runs`` table and pruned after 30
days.

Usage::

    tracker = SchedulerHealthTracker(db)
    tracker.record_run("Fee Snapshot Reconciliation", success=True)
    tracker.summary()["Fee Snapshot Reconciliation"]["last_success_at"]
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

from clubledger.persistence import ClubDB

logger = logging.getLogger(__name__)

# Retention: keep 30 days of run history.
_RETENTION_SECONDS: float = 30 * 24 * 3600


@dataclass
class SchedulerRun:
    """A single recorded job run.

    Attributes:
        job_name: Human-readable job name.
        success: Whether the run completed without a job-level error.
        ran_at: Unix time the run finished.
        error_detail: Failure message, if any.
    """

    job_name: str
    success: bool
    ran_at: float
    error_detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SchedulerHealthTracker:
    """Write-mostly sink for scheduler run outcomes."""

    def __init__(self, db: ClubDB) -> None:
        self._db = db

    def record_run(
        self,
        job_name: str,
        success: bool,
        error_detail: Optional[str] = None,
    ) -> SchedulerRun:
        """Record one run of *job_name*.

        Never raises: health bookkeeping must not take a sweep down with it.
        """
        run = SchedulerRun(job_name=job_name, success=success, ran_at=time.time(), error_detail=error_detail)
        try:
            self._db.execute(
                "INSERT INTO scheduler_runs (job_name, success, error_detail, ran_at) VALUES (?, ?, ?, ?)",
                (job_name, 1 if success else 0, error_detail, run.ran_at),
            )
            self._db.execute(
                "DELETE FROM scheduler_runs WHERE ran_at < ?",
                (run.ran_at - _RETENTION_SECONDS,),
            )
        except Exception:
            logger.exception("Failed to record scheduler run for %s", job_name)
        if not success:
            logger.warning("Scheduler job %s failed: %s", job_name, error_detail)
        return run

    def summary(self) -> dict[str, dict[str, Any]]:
        """Per job: last run, last success, last error, and recent failure count."""
        rows = self._db.fetch_all(
            """
            SELECT job_name,
                   MAX(ran_at) AS last_run_at,
                   MAX(CASE WHEN success = 1 THEN ran_at END) AS last_success_at,
                   SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS failures
            FROM scheduler_runs
            GROUP BY job_name
            ORDER BY job_name
            """
        )
        result: dict[str, dict[str, Any]] = {}
        for row in rows:
            last_error = self._db.fetch_one(
                "SELECT error_detail, ran_at FROM scheduler_runs "
                "WHERE job_name = ? AND success = 0 ORDER BY ran_at DESC LIMIT 1",
                (row["job_name"],),
            )
            result[row["job_name"]] = {
                "last_run_at": row["last_run_at"],
                "last_success_at": row["last_success_at"],
                "failures": int(row["failures"] or 0),
                "last_error": last_error["error_detail"] if last_error else None,
                "healthy": row["last_success_at"] is not None
                and row["last_success_at"] == row["last_run_at"],
            }
        return result
