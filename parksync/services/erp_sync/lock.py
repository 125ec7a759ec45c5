"""Per-integration mutual exclusion backed by the ``sync_locks`` table."""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parksync.models.sync_run import SyncLock
from parksync.services.erp_sync.errors import SyncInProgressError

logger = logging.getLogger(__name__)


def acquire_lock(db: Session, integration_id, owner: str, ttl_seconds: int) -> None:
    """Take the lock or raise ``SyncInProgressError``.

    The insert relies on the primary key for atomicity; a lock older than
    ``ttl_seconds`` is taken over with a conditional update.
    """
    now = datetime.now(UTC)
    try:
        with db.begin_nested():
            db.execute(insert(SyncLock).values(integration_id=integration_id, owner=owner, acquired_at=now))
        db.commit()
        return
    except IntegrityError:
        logger.debug("ERP_SYNC_LOCK_HELD integration_id=%s", integration_id)

    cutoff = now - timedelta(seconds=ttl_seconds)
    result = db.execute(
        update(SyncLock)
        .where(SyncLock.integration_id == integration_id)
        .where(SyncLock.acquired_at < cutoff)
        .values(owner=owner, acquired_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.commit()
        logger.warning("ERP_SYNC_LOCK_STALE_TAKEOVER integration_id=%s owner=%s", integration_id, owner)
        return
    db.commit()
    raise SyncInProgressError(integration_id)


def release_lock(db: Session, integration_id, owner: str) -> None:
    db.execute(
        delete(SyncLock)
        .where(SyncLock.integration_id == integration_id)
        .where(SyncLock.owner == owner)
        .execution_options(synchronize_session=False)
    )
    db.commit()
