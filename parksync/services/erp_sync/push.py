"""Local to ERP half of two-way integrations."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from parksync.services.erp_sync.client import ErpAuthError, ErpClient, ErpError
from parksync.services.erp_sync.entities import EntityStore, normalize_key
from parksync.services.erp_sync.integration_config import SyncConfig
from parksync.services.erp_sync.mapper import coerce_value, map_local_row_to_erp
from parksync.services.erp_sync.reconcile import ReconcileResult, RowOutcome
from parksync.services.erp_sync.stats import LOCAL_TO_ERP, Outcome, SkipReason

logger = logging.getLogger(__name__)


class LocalChangePusher:
    """Sends rows edited locally since their last exchange back to the ERP.

    A row without a value in the unique field is inserted in the ERP and
    the returned id is written back. An authentication error stops the
    phase and is reported on the result; any other ERP error only fails
    the row.
    """

    def __init__(self, db: Session, config: SyncConfig, store: EntityStore, client: ErpClient, limit: int):
        self.db = db
        self.config = config
        self.store = store
        self.client = client
        self.limit = limit

    def push(self, token: str) -> ReconcileResult:
        result = ReconcileResult(direction=LOCAL_TO_ERP)
        for index, row in enumerate(self.store.pending_local_changes(self.limit)):
            try:
                result.add(self._push_row(token, row, index))
            except ErpAuthError as exc:
                result.error = str(exc)
                break
        logger.info(
            "ERP_SYNC_PUSH_DONE entity=%s created=%d updated=%d skipped=%d errors=%d",
            self.config.entity,
            result.stats.created,
            result.stats.updated,
            result.stats.skipped,
            result.stats.errors,
        )
        return result

    def _push_row(self, token: str, row, index: int) -> RowOutcome:
        unique_field = self.config.unique_local_field
        key_value = getattr(row, unique_field)
        unique_key = normalize_key(key_value)
        payload = map_local_row_to_erp(row, self.config.mappings, exclude={self.config.unique_erp_field})
        if not payload:
            return RowOutcome(
                unique_key=unique_key,
                outcome=Outcome.skipped,
                reason=SkipReason.empty_payload,
                index=index,
            )

        key = "" if unique_key is None else str(key_value)
        try:
            erp_id = self.client.push_row(
                token, self.config.source_table, key, payload, object_name=self.config.erp_object
            )
        except ErpAuthError:
            raise
        except ErpError as exc:
            logger.warning("ERP_SYNC_PUSH_ERROR entity=%s key=%s error=%s", self.config.entity, key, exc)
            return RowOutcome(unique_key=unique_key, outcome=Outcome.errored, message=str(exc), index=index)

        try:
            with self.db.begin_nested():
                now = datetime.now(UTC)
                changes = {"updated_at": now, "erp_synced_at": now}
                if not key:
                    column = self.config.spec.columns[unique_field]
                    changes[unique_field] = coerce_value(erp_id, column)
                self.store.update(row, changes)
        except Exception as exc:
            logger.warning(
                "ERP_SYNC_PUSH_WRITEBACK_ERROR entity=%s erp_id=%s error=%s", self.config.entity, erp_id, exc
            )
            return RowOutcome(
                unique_key=normalize_key(erp_id),
                outcome=Outcome.errored,
                message=f"ERP accepted row {erp_id} but local update failed: {exc}",
                index=index,
            )

        if not key:
            return RowOutcome(unique_key=normalize_key(erp_id), outcome=Outcome.created, index=index)
        return RowOutcome(unique_key=unique_key, outcome=Outcome.updated, index=index)
