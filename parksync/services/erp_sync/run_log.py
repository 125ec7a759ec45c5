"""Audit trail of sync runs."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from parksync.config import settings
from parksync.models.sync_run import SyncLock, SyncRun, SyncRunStatus, SyncTrigger
from parksync.services.erp_sync.stats import Outcome, SyncStats

logger = logging.getLogger(__name__)


class RunLog:
    """Creates, accumulates and finalizes ``SyncRun`` rows.

    ``append_stats`` and the other accumulating calls only stage changes;
    the controller commits them together with the cursor so a resumed
    run never counts a page twice. ``start_run`` and ``finish_run``
    commit on their own.
    """

    def __init__(self, db: Session, max_error_details: int | None = None):
        self.db = db
        self.max_error_details = (
            max_error_details if max_error_details is not None else settings.erp_sync_max_error_details
        )

    def _get(self, run_id) -> SyncRun:
        run = self.db.get(SyncRun, run_id)
        if run is None:
            raise LookupError(f"Sync run not found: {run_id}")
        return run

    def start_run(
        self,
        integration_id,
        trigger: SyncTrigger = SyncTrigger.manual,
        full_resync: bool = False,
    ) -> SyncRun:
        run = SyncRun(
            integration_id=integration_id,
            status=SyncRunStatus.running,
            trigger=trigger,
            full_resync=full_resync,
            invocations=1,
            stats=SyncStats().to_dict(),
            details={"pages": 0, "skip_reasons": {}, "errors": []},
            started_at=datetime.now(UTC),
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        logger.info("ERP_SYNC_RUN_START run_id=%s integration_id=%s", run.id, integration_id)
        return run

    def resume_run(self, run_id) -> SyncRun:
        run = self._get(run_id)
        run.status = SyncRunStatus.running
        run.invocations = (run.invocations or 0) + 1
        run.completed_at = None
        run.error = None
        self.db.commit()
        logger.info("ERP_SYNC_RUN_RESUME run_id=%s invocation=%d", run.id, run.invocations)
        return run

    def append_stats(self, run_id, stats: SyncStats) -> SyncRun:
        run = self._get(run_id)
        run.stats = SyncStats.from_dict(run.stats).merge(stats).to_dict()
        details = dict(run.details or {})
        reasons = dict(details.get("skip_reasons") or {})
        for direction in (stats.erp_to_local, stats.local_to_erp):
            if direction is None:
                continue
            for reason, count in direction.skip_reasons.items():
                reasons[reason] = reasons.get(reason, 0) + count
        details["skip_reasons"] = reasons
        run.details = details
        return run

    def record_errors(self, run_id, outcomes, direction: str) -> None:
        errored = [item for item in outcomes if item.outcome == Outcome.errored]
        if not errored:
            return
        run = self._get(run_id)
        details = dict(run.details or {})
        errors = list(details.get("errors") or [])
        for item in errored:
            if len(errors) >= self.max_error_details:
                details["errors_truncated"] = True
                break
            errors.append({"key": item.unique_key, "direction": direction, "message": item.message})
        details["errors"] = errors
        run.details = details

    def note(self, run_id, key: str, value) -> None:
        run = self._get(run_id)
        details = dict(run.details or {})
        details[key] = value
        run.details = details

    def count_page(self, run_id) -> int:
        run = self._get(run_id)
        details = dict(run.details or {})
        details["pages"] = int(details.get("pages") or 0) + 1
        run.details = details
        return details["pages"]

    def finish_run(self, run_id, status: SyncRunStatus, error: str | None = None) -> SyncRun:
        run = self._get(run_id)
        run.status = status
        if error and not run.error:
            run.error = error
        run.completed_at = datetime.now(UTC)
        self.db.commit()
        logger.info(
            "ERP_SYNC_RUN_FINISH run_id=%s status=%s error=%s", run.id, status.value, error or ""
        )
        return run

    def reset_stuck_runs(self, older_than: timedelta) -> int:
        """Mark runs left in ``running`` by a crashed worker as errored.

        Runs whose integration still holds a fresh lock are left alone.
        """
        cutoff = datetime.now(UTC) - older_than
        locked = select(SyncLock.integration_id).where(SyncLock.acquired_at >= cutoff)
        stuck = (
            self.db.query(SyncRun)
            .filter(SyncRun.status == SyncRunStatus.running)
            .filter(SyncRun.started_at < cutoff)
            .filter(SyncRun.integration_id.not_in(locked))
            .all()
        )
        for run in stuck:
            run.status = SyncRunStatus.error
            run.error = run.error or "stale run reset by scheduler"
            run.completed_at = datetime.now(UTC)
        if stuck:
            self.db.commit()
            logger.info("ERP_SYNC_STUCK_RUNS_RESET count=%d", len(stuck))
        return len(stuck)
