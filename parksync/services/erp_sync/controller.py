"""Drives one sync invocation: pages, budget, cursor, full resync and push."""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from parksync.config import Settings, settings
from parksync.metrics import observe_sync_page, observe_sync_rows
from parksync.models.integration import ErpConnection, Integration
from parksync.models.sync_run import SyncCursor, SyncRun, SyncRunStatus, SyncTrigger
from parksync.services.erp_sync.client import ErpClient, ErpCredentials, ErpError, SoftOneClient
from parksync.services.erp_sync.entities import EntityRegistry, EntityStore, default_registry
from parksync.services.erp_sync.errors import IntegrationConfigError, IntegrationNotFoundError
from parksync.services.erp_sync.integration_config import DEFAULT_FILTER, SyncConfig, load_sync_config
from parksync.services.erp_sync.lock import acquire_lock, release_lock
from parksync.services.erp_sync.mapper import map_erp_row_to_local, resolve_rows
from parksync.services.erp_sync.push import LocalChangePusher
from parksync.services.erp_sync.reconcile import Reconciler, as_utc
from parksync.services.erp_sync.run_log import RunLog
from parksync.services.erp_sync.stats import (
    ERP_TO_LOCAL,
    LOCAL_TO_ERP,
    DirectionStats,
    Outcome,
    SkipReason,
    SyncStats,
)
from parksync.services.secrets import SecretError, decrypt_secret
from parksync.telemetry import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

ClientFactory = Callable[[ErpConnection], ErpClient]


def credentials_for(connection: ErpConnection) -> ErpCredentials:
    try:
        password = decrypt_secret(connection.password_enc)
    except SecretError as exc:
        raise IntegrationConfigError(f"ERP connection password unavailable: {exc}") from exc
    return ErpCredentials(
        base_url=connection.base_url,
        username=connection.username,
        password=password,
        app_id=connection.app_id,
        company=connection.company,
        branch=connection.branch,
        module=connection.module,
        refid=connection.refid,
        version=connection.version or "1",
        registered_name=connection.registered_name,
    )


def softone_client_factory(connection: ErpConnection) -> ErpClient:
    return SoftOneClient(connection.base_url, connection.app_id)


class _PageFailure(Exception):
    def __init__(self, error: ErpError):
        super().__init__(str(error))
        self.error = error


class SyncController:
    """Runs an integration's sync within a wall-clock budget.

    A logical run may span several invocations: when the budget runs out
    the position is stored in ``SyncCursor`` and the next invocation picks
    up the same ``SyncRun`` where the previous one stopped.
    """

    def __init__(
        self,
        db: Session,
        client_factory: ClientFactory | None = None,
        registry: EntityRegistry | None = None,
        app_settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        owner: str | None = None,
    ):
        self.db = db
        self.client_factory = client_factory or softone_client_factory
        self.registry = registry or default_registry
        self.settings = app_settings or settings
        self.clock = clock
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.run_log = RunLog(self.db, self.settings.erp_sync_max_error_details)
        self._started = 0.0
        self._longest_page = 0.0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run_sync(
        self,
        integration_id,
        full_resync: bool = False,
        trigger: SyncTrigger | str = SyncTrigger.manual,
    ) -> SyncRun:
        """Run (or resume) a sync and return the finalized or partial run.

        Raises ``IntegrationNotFoundError`` for an unknown integration and
        ``SyncInProgressError`` when another invocation holds the lock.
        Every other failure is recorded on the returned run.
        """
        integration = self._get_integration(integration_id)
        trigger = SyncTrigger(trigger)
        self._started = self.clock()
        self._longest_page = 0.0

        acquire_lock(self.db, integration.id, self.owner, self.settings.erp_sync_lock_ttl_seconds)
        try:
            with tracer.start_as_current_span("erp_sync.run") as span:
                span.set_attribute("integration.id", str(integration.id))
                span.set_attribute("sync.trigger", trigger.value)
                run = self._run(integration, full_resync, trigger)
                span.set_attribute("sync.status", run.status.value)
                return run
        except Exception:
            self.db.rollback()
            raise
        finally:
            release_lock(self.db, integration.id, self.owner)

    def _get_integration(self, integration_id) -> Integration:
        try:
            key = integration_id if isinstance(integration_id, uuid.UUID) else uuid.UUID(str(integration_id))
        except ValueError as exc:
            raise IntegrationNotFoundError(integration_id) from exc
        integration = self.db.get(Integration, key)
        if integration is None or not integration.is_active:
            raise IntegrationNotFoundError(integration_id)
        return integration

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _run(self, integration: Integration, full_resync: bool, trigger: SyncTrigger) -> SyncRun:
        logger.info(
            "ERP_SYNC_START integration_id=%s trigger=%s full_resync=%s",
            integration.id,
            trigger.value,
            full_resync,
        )
        cursor = self.db.get(SyncCursor, integration.id)
        if cursor is not None and full_resync:
            logger.info("ERP_SYNC_CURSOR_DISCARDED integration_id=%s run_id=%s", integration.id, cursor.run_id)
            self.run_log.note(cursor.run_id, "superseded_by_full_resync", True)
            self.db.delete(cursor)
            self.db.commit()
            cursor = None

        if cursor is not None:
            run = self.run_log.resume_run(cursor.run_id)
        else:
            run = self.run_log.start_run(integration.id, trigger=trigger, full_resync=full_resync)

        try:
            config = load_sync_config(integration, self.registry)
            credentials = credentials_for(integration.connection)
        except IntegrationConfigError as exc:
            logger.warning("ERP_SYNC_CONFIG_ERROR integration_id=%s error=%s", integration.id, exc)
            return self._fail(run, integration, str(exc))

        client = self.client_factory(integration.connection)
        try:
            return self._execute(run, integration, config, credentials, client, cursor, trigger)
        except Exception as exc:
            logger.exception("ERP_SYNC_FAILED integration_id=%s run_id=%s", integration.id, run.id)
            self.db.rollback()
            return self._fail(run, integration, f"Unexpected error: {exc}", keep_cursor=True)
        finally:
            client.close()

    def _fail(self, run: SyncRun, integration: Integration, error: str, keep_cursor: bool = False) -> SyncRun:
        if not keep_cursor:
            self._discard_cursor(integration.id)
        return self.run_log.finish_run(run.id, SyncRunStatus.error, error)

    def _discard_cursor(self, integration_id) -> None:
        cursor = self.db.get(SyncCursor, integration_id)
        if cursor is not None:
            self.db.delete(cursor)
            self.db.commit()

    def _execute(
        self,
        run: SyncRun,
        integration: Integration,
        config: SyncConfig,
        credentials: ErpCredentials,
        client: ErpClient,
        cursor: SyncCursor | None,
        trigger: SyncTrigger,
    ) -> SyncRun:
        store = self.registry.store(self.db, config.entity)
        full_resync = cursor.full_resync if cursor is not None else run.full_resync

        if full_resync and cursor is None:
            problem = self._full_resync_problem(config, store)
            if problem:
                return self._fail(run, integration, problem)

        try:
            token = client.authenticate(credentials)
        except ErpError as exc:
            logger.warning("ERP_SYNC_AUTH_FAILED integration_id=%s error=%s", integration.id, exc)
            return self._fail(run, integration, f"ERP authentication failed: {exc}")

        if cursor is None:
            filter_expr = self.build_filter(config, integration, trigger, full_resync)
            completed = self._pull_fresh(run, integration, config, store, client, token, filter_expr, full_resync)
        else:
            completed = self._pull_pages(run, integration, config, store, client, token, cursor, buffered=[])

        if completed is not True:
            return completed

        self._discard_cursor(integration.id)
        integration.last_synced_at = run.started_at
        self.db.commit()

        if config.two_way:
            push_error = self._push(run, config, store, client, token)
            if push_error:
                return self.run_log.finish_run(run.id, SyncRunStatus.partial, push_error)

        logger.info("ERP_SYNC_COMPLETE integration_id=%s run_id=%s", integration.id, run.id)
        return self.run_log.finish_run(run.id, SyncRunStatus.success)

    # ------------------------------------------------------------------
    # Full resync
    # ------------------------------------------------------------------

    def _full_resync_problem(self, config: SyncConfig, store: EntityStore) -> str | None:
        if not config.spec.full_resync_allowed:
            return f"Full resync is not supported for {config.entity}"
        requirement = config.spec.parent
        if requirement is not None and store.parent_count() == 0:
            return f"Full resync of {config.entity} requires {requirement.parent_entity} to be synced first"
        return None

    def _purge_after_fetch(self, run: SyncRun, store: EntityStore, rows: list) -> None:
        """Purge only once the ERP has answered with rows to reload."""
        if not rows:
            logger.warning("ERP_SYNC_FULL_RESYNC_EMPTY entity=%s purge skipped", store.spec.name)
            self.run_log.note(run.id, "full_resync", {"deleted": 0, "batches": 0, "skipped": "empty ERP table"})
            self.db.commit()
            return
        self._purge(run, store)

    def _purge(self, run: SyncRun, store: EntityStore) -> int:
        deleted = 0
        batches = 0
        while True:
            removed = store.delete_batch(self.settings.erp_sync_delete_batch_size)
            if not removed:
                break
            deleted += removed
            batches += 1
            self.db.commit()
        self.run_log.note(run.id, "full_resync", {"deleted": deleted, "batches": batches})
        self.db.commit()
        logger.info("ERP_SYNC_FULL_RESYNC_PURGE entity=%s deleted=%d batches=%d", store.spec.name, deleted, batches)
        return deleted

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def build_filter(
        self,
        config: SyncConfig,
        integration: Integration,
        trigger: SyncTrigger,
        full_resync: bool,
    ) -> str:
        """ERP filter for a new run.

        Scheduled runs only ask for rows modified since the last completed
        pull; manual runs and full resyncs read the whole table.
        """
        base = config.base_filter
        if (
            trigger != SyncTrigger.cron
            or full_resync
            or not config.modified_field
            or integration.last_synced_at is None
        ):
            return base
        since = as_utc(integration.last_synced_at).astimezone(ZoneInfo(self.settings.erp_timezone))
        condition = f"{config.modified_field}>'{since.strftime('%Y-%m-%d %H:%M:%S')}'"
        if base == DEFAULT_FILTER:
            return condition
        return f"({base}) AND {condition}"

    def _fetch(self, config: SyncConfig, client: ErpClient, token: str, filter_expr: str, offset: int, size: int):
        try:
            page = client.fetch_page(token, config.source_table, config.erp_fields, filter_expr, offset, size)
        except ErpError as exc:
            observe_sync_page(config.entity, "error")
            raise _PageFailure(exc) from exc
        observe_sync_page(config.entity, "ok")
        return page

    def _pull_fresh(
        self,
        run: SyncRun,
        integration: Integration,
        config: SyncConfig,
        store: EntityStore,
        client: ErpClient,
        token: str,
        filter_expr: str,
        full_resync: bool,
    ):
        threshold = self.settings.erp_sync_small_table_threshold
        fetch_started = self.clock()
        try:
            page = self._fetch(config, client, token, filter_expr, 0, threshold)
        except _PageFailure as failure:
            return self._page_failed(run, integration, failure.error, first_page=True)
        rows = resolve_rows(page.rows, page.columns)
        if full_resync:
            self._purge_after_fetch(run, store, rows)

        if page.total_count <= threshold and len(rows) >= page.total_count:
            logger.info("ERP_SYNC_SINGLE_PASS entity=%s rows=%d", config.entity, len(rows))
            self._process_page(run, config, store, rows, 0)
            self.db.commit()
            self._longest_page = self.clock() - fetch_started
            return True

        cursor = SyncCursor(
            integration_id=integration.id,
            run_id=run.id,
            offset_processed=0,
            total_expected=page.total_count,
            page_size=self.settings.erp_sync_page_size,
            has_more=True,
            filter_expr=filter_expr,
            full_resync=full_resync,
            purged=full_resync,
        )
        self.db.add(cursor)
        self.db.flush()
        return self._pull_pages(run, integration, config, store, client, token, cursor, buffered=rows)

    def _has_budget(self) -> bool:
        elapsed = self.clock() - self._started
        remaining = self.settings.erp_sync_budget_seconds - elapsed
        return remaining >= max(self._longest_page, self.settings.erp_sync_page_reserve_seconds)

    def _pull_pages(
        self,
        run: SyncRun,
        integration: Integration,
        config: SyncConfig,
        store: EntityStore,
        client: ErpClient,
        token: str,
        cursor: SyncCursor,
        buffered: list,
    ):
        """Process fixed-size pages from ``cursor.offset_processed`` on.

        Returns ``True`` once every page is processed, otherwise the run
        finalized as partial or error.
        """
        page_size = cursor.page_size
        offset = cursor.offset_processed
        total = cursor.total_expected
        while buffered or offset < total:
            if not self._has_budget():
                cursor.has_more = True
                self.db.commit()
                logger.info(
                    "ERP_SYNC_BUDGET_EXHAUSTED integration_id=%s offset=%d total=%d",
                    integration.id,
                    offset,
                    total,
                )
                return self.run_log.finish_run(run.id, SyncRunStatus.partial)

            page_started = self.clock()
            if buffered:
                rows, buffered = buffered[:page_size], buffered[page_size:]
            else:
                try:
                    page = self._fetch(config, client, token, cursor.filter_expr, offset, page_size)
                except _PageFailure as failure:
                    first_page = offset == 0 and not (run.details or {}).get("pages")
                    return self._page_failed(run, integration, failure.error, first_page=first_page)
                rows = resolve_rows(page.rows, page.columns)
                total = page.total_count
                cursor.total_expected = total
                if not rows:
                    if offset < total:
                        logger.warning(
                            "ERP_SYNC_SHORT_TABLE integration_id=%s offset=%d total=%d",
                            integration.id,
                            offset,
                            total,
                        )
                    break

            self._process_page(run, config, store, rows, offset)
            offset += len(rows)
            cursor.offset_processed = offset
            cursor.has_more = offset < total
            self.db.commit()
            self._longest_page = max(self._longest_page, self.clock() - page_started)
        return True

    def _page_failed(self, run: SyncRun, integration: Integration, error: ErpError, first_page: bool) -> SyncRun:
        logger.warning(
            "ERP_SYNC_PAGE_FAILED integration_id=%s first_page=%s error=%s", integration.id, first_page, error
        )
        self.db.rollback()
        if first_page:
            return self._fail(run, integration, f"ERP fetch failed: {error}")
        return self.run_log.finish_run(run.id, SyncRunStatus.partial, f"ERP fetch failed: {error}")

    def _process_page(self, run: SyncRun, config: SyncConfig, store: EntityStore, rows: list, offset: int) -> None:
        with tracer.start_as_current_span("erp_sync.page") as span:
            span.set_attribute("page.offset", offset)
            span.set_attribute("page.rows", len(rows))
            mapped = [map_erp_row_to_local(row, config, index=offset + i) for i, row in enumerate(rows)]
            result = Reconciler(self.db, config, store, self.settings.erp_timezone).reconcile(mapped, ERP_TO_LOCAL)

            stats = SyncStats(erp_to_local=result.stats)
            if config.two_way:
                local_stats = DirectionStats()
                for _ in result.conflicts:
                    local_stats.record(Outcome.skipped, SkipReason.conflict_erp_wins)
                stats.local_to_erp = local_stats

            self.run_log.append_stats(run.id, stats)
            self.run_log.record_errors(run.id, result.outcomes, ERP_TO_LOCAL)
            pages = self.run_log.count_page(run.id)
            observe_sync_rows(config.entity, ERP_TO_LOCAL, result.stats)
            logger.info(
                "ERP_SYNC_PAGE entity=%s page=%d offset=%d rows=%d created=%d updated=%d skipped=%d errors=%d",
                config.entity,
                pages,
                offset,
                len(rows),
                result.stats.created,
                result.stats.updated,
                result.stats.skipped,
                result.stats.errors,
            )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def _push(self, run: SyncRun, config: SyncConfig, store: EntityStore, client: ErpClient, token: str) -> str | None:
        pusher = LocalChangePusher(self.db, config, store, client, self.settings.erp_sync_push_limit)
        result = pusher.push(token)
        self.run_log.append_stats(run.id, SyncStats(erp_to_local=DirectionStats(), local_to_erp=result.stats))
        self.run_log.record_errors(run.id, result.outcomes, LOCAL_TO_ERP)
        self.db.commit()
        observe_sync_rows(config.entity, LOCAL_TO_ERP, result.stats)
        if result.error:
            logger.warning("ERP_SYNC_PUSH_ABORTED run_id=%s error=%s", run.id, result.error)
            return f"Push aborted: {result.error}"
        return None
