"""Tests for the sync controller: paging, budget, resume, full resync and push."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from parksync.models.integration import SyncDirection
from parksync.models.parking import Contract, ContractLine, Customer
from parksync.models.sync_run import SyncCursor, SyncLock, SyncRun, SyncRunStatus, SyncTrigger
from parksync.services.erp_sync.client import ErpAuthError, ErpTransientError
from parksync.services.erp_sync.errors import IntegrationNotFoundError, SyncInProgressError
from parksync.services.erp_sync.integration_config import load_sync_config
from parksync.services.erp_sync.entities import default_registry
from parksync.services.erp_sync.reconcile import as_utc

LINE_MAPPINGS = [
    {"erp_field": "INSTLINES", "local_field": "instlines"},
    {"erp_field": "INST", "local_field": "inst"},
    {"erp_field": "PRICE", "local_field": "price"},
]


def _customer_rows(count, start=1):
    return [
        {"TRDR": str(1000 + n), "CODE": f"C{n}", "NAME": f"Customer {n}", "UPDDATE": "2024-03-01 10:00:00"}
        for n in range(start, start + count)
    ]


def _customers(db):
    return db.scalars(select(Customer).order_by(Customer.trdr)).all()


def _paged_controller(make_controller, client, clock=None, **overrides):
    options = {
        "erp_sync_small_table_threshold": 3,
        "erp_sync_page_size": 2,
        "erp_timezone": "Europe/Athens",
    }
    options.update(overrides)
    return make_controller(client, clock=clock, **options)


# ---------------------------------------------------------------------------
# Single pass and paging
# ---------------------------------------------------------------------------


class TestPull:
    def test_small_table_single_pass(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        client = make_erp_client(_customer_rows(3))

        run = make_controller(client).run_sync(integration.id)

        assert run.status == SyncRunStatus.success
        assert run.stats["erp_to_local"]["created"] == 3
        assert run.stats["erp_to_local"]["total"] == 3
        assert len(_customers(db_session)) == 3
        assert len(client.fetch_calls) == 1
        assert client.fetch_calls[0]["filter"] == "1=1"
        assert client.fetch_calls[0]["fields"] == ["TRDR", "CODE", "NAME", "EMAIL", "UPDDATE"]
        assert client.closed is True
        assert client.credentials.password == "s3cret"
        assert db_session.get(SyncCursor, integration.id) is None
        db_session.refresh(integration)
        assert as_utc(integration.last_synced_at) == as_utc(run.started_at)

    def test_lock_released_after_run(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()

        make_controller(make_erp_client(_customer_rows(1))).run_sync(integration.id)

        assert db_session.scalars(select(SyncLock)).all() == []

    def test_large_table_is_paged(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        client = make_erp_client(_customer_rows(7))

        run = _paged_controller(make_controller, client).run_sync(integration.id)

        assert run.status == SyncRunStatus.success
        assert run.stats["erp_to_local"]["created"] == 7
        # probe, then pages at 3 and 5
        assert [call["offset"] for call in client.fetch_calls] == [0, 3, 5]
        assert run.details["pages"] == 4
        assert db_session.get(SyncCursor, integration.id) is None

    def test_rerun_is_idempotent(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        rows = _customer_rows(7)

        _paged_controller(make_controller, make_erp_client(rows)).run_sync(integration.id)
        run = _paged_controller(make_controller, make_erp_client(rows)).run_sync(integration.id)

        stats = run.stats["erp_to_local"]
        assert stats["created"] == 0
        assert stats["updated"] == 0
        assert stats["skip_reasons"] == {"NO_CHANGE": 7}
        assert len(_customers(db_session)) == 7


# ---------------------------------------------------------------------------
# Budget and resume
# ---------------------------------------------------------------------------


class TestResume:
    def test_budget_exhaustion_then_resume(
        self, db_session, make_integration, make_erp_client, make_controller, fake_clock
    ):
        integration = make_integration()
        client = make_erp_client(_customer_rows(7), clock=fake_clock, fetch_seconds=30)
        controller = _paged_controller(
            make_controller,
            client,
            clock=fake_clock,
            erp_sync_budget_seconds=80,
            erp_sync_page_reserve_seconds=30,
        )

        first = controller.run_sync(integration.id)

        assert first.status == SyncRunStatus.partial
        assert first.error is None
        assert first.stats["erp_to_local"]["created"] == 5
        cursor = db_session.get(SyncCursor, integration.id)
        assert cursor.run_id == first.id
        assert cursor.offset_processed == 5
        assert cursor.total_expected == 7
        assert cursor.has_more is True
        assert integration.last_synced_at is None

        second = controller.run_sync(integration.id)

        assert second.id == first.id
        assert second.status == SyncRunStatus.success
        assert second.invocations == 2
        assert second.stats["erp_to_local"]["created"] == 7
        assert second.stats["erp_to_local"]["total"] == 7
        assert db_session.get(SyncCursor, integration.id) is None
        assert len(_customers(db_session)) == 7
        assert db_session.scalar(select(SyncRun.id).where(SyncRun.integration_id == integration.id)) == first.id

    def test_fetch_error_on_first_page(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        client = make_erp_client(_customer_rows(3))
        client.fetch_errors[0] = ErpTransientError("ERP timeout")

        run = make_controller(client).run_sync(integration.id)

        assert run.status == SyncRunStatus.error
        assert "ERP fetch failed" in run.error
        assert db_session.get(SyncCursor, integration.id) is None
        assert _customers(db_session) == []

    def test_fetch_error_on_later_page_keeps_progress(
        self, db_session, make_integration, make_erp_client, make_controller
    ):
        integration = make_integration()
        client = make_erp_client(_customer_rows(7))
        client.fetch_errors[3] = ErpTransientError("ERP timeout")
        controller = _paged_controller(make_controller, client)

        first = controller.run_sync(integration.id)

        assert first.status == SyncRunStatus.partial
        assert "ERP timeout" in first.error
        assert db_session.get(SyncCursor, integration.id).offset_processed == 3
        assert len(_customers(db_session)) == 3

        second = controller.run_sync(integration.id)

        assert second.id == first.id
        assert second.status == SyncRunStatus.success
        assert second.error is None
        assert second.stats["erp_to_local"]["created"] == 7

    def test_unexpected_error_keeps_cursor(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        client = make_erp_client(_customer_rows(7))
        client.fetch_errors[3] = RuntimeError("boom")

        run = _paged_controller(make_controller, client).run_sync(integration.id)

        assert run.status == SyncRunStatus.error
        assert run.error == "Unexpected error: boom"
        assert db_session.get(SyncCursor, integration.id) is not None
        assert db_session.scalars(select(SyncLock)).all() == []


# ---------------------------------------------------------------------------
# Failures before any row is read
# ---------------------------------------------------------------------------


class TestRunFailures:
    def test_inactive_integration_fails_fast(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(is_active=False)
        client = make_erp_client(_customer_rows(1))

        with pytest.raises(IntegrationNotFoundError):
            make_controller(client).run_sync(integration.id)

        assert client.fetch_calls == []
        assert db_session.scalars(select(SyncRun)).all() == []
        assert db_session.scalars(select(SyncLock)).all() == []

    def test_lock_released_when_bookkeeping_fails(
        self, db_session, monkeypatch, make_integration, make_erp_client, make_controller
    ):
        integration = make_integration()
        controller = make_controller(make_erp_client(_customer_rows(1)))

        def _broken_start_run(*args, **kwargs):
            db_session.add(Customer(trdr="x", name=None))
            db_session.flush()

        monkeypatch.setattr(controller.run_log, "start_run", _broken_start_run)

        with pytest.raises(IntegrityError):
            controller.run_sync(integration.id)

        assert db_session.scalars(select(SyncLock)).all() == []

    def test_auth_error(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        client = make_erp_client(_customer_rows(2))
        client.auth_error = ErpAuthError("Login failed")

        run = make_controller(client).run_sync(integration.id)

        assert run.status == SyncRunStatus.error
        assert run.error == "ERP authentication failed: Login failed"
        assert client.fetch_calls == []

    def test_config_error(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(target_entity="parking_spots")
        client = make_erp_client(_customer_rows(2))

        run = make_controller(client).run_sync(integration.id)

        assert run.status == SyncRunStatus.error
        assert "Unknown target entity: parking_spots" in run.error
        assert client.credentials is None

    def test_unknown_integration(self, make_erp_client, make_controller):
        controller = make_controller(make_erp_client())
        with pytest.raises(IntegrationNotFoundError):
            controller.run_sync(uuid.uuid4())
        with pytest.raises(IntegrationNotFoundError):
            controller.run_sync("not-a-uuid")

    def test_lock_held_by_another_worker(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        db_session.add(SyncLock(integration_id=integration.id, owner="other", acquired_at=datetime.now(UTC)))
        db_session.commit()

        with pytest.raises(SyncInProgressError):
            make_controller(make_erp_client(_customer_rows(1))).run_sync(integration.id)

        assert db_session.scalars(select(SyncRun)).all() == []

    def test_stale_lock_is_taken_over(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        stale = datetime.now(UTC) - timedelta(hours=3)
        db_session.add(SyncLock(integration_id=integration.id, owner="crashed", acquired_at=stale))
        db_session.commit()

        run = make_controller(make_erp_client(_customer_rows(1))).run_sync(integration.id)

        assert run.status == SyncRunStatus.success


# ---------------------------------------------------------------------------
# Full resync
# ---------------------------------------------------------------------------


class TestFullResync:
    def test_purges_then_reloads(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        db_session.add_all([Customer(trdr="1", name="Gone"), Customer(trdr="2", name="Also gone")])
        db_session.commit()

        run = make_controller(make_erp_client(_customer_rows(2)), erp_sync_delete_batch_size=1).run_sync(
            integration.id, full_resync=True
        )

        assert run.status == SyncRunStatus.success
        assert run.full_resync is True
        assert run.details["full_resync"] == {"deleted": 2, "batches": 2}
        assert [customer.trdr for customer in _customers(db_session)] == ["1001", "1002"]

    def test_fetch_failure_keeps_local_rows(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        db_session.add_all([Customer(trdr=str(n), name=f"Kept {n}") for n in range(1, 4)])
        db_session.commit()
        client = make_erp_client(_customer_rows(2))
        client.fetch_errors[0] = ErpTransientError("timeout")

        run = make_controller(client).run_sync(integration.id, full_resync=True)

        assert run.status == SyncRunStatus.error
        assert run.error == "ERP fetch failed: timeout"
        assert "full_resync" not in run.details
        assert [customer.trdr for customer in _customers(db_session)] == ["1", "2", "3"]

    def test_empty_erp_table_keeps_local_rows(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        db_session.add(Customer(trdr="1", name="Kept"))
        db_session.commit()

        run = make_controller(make_erp_client([])).run_sync(integration.id, full_resync=True)

        assert run.status == SyncRunStatus.success
        assert run.details["full_resync"]["deleted"] == 0
        assert len(_customers(db_session)) == 1

    def test_rejected_for_contracts(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(
            source_table="INST",
            target_entity="contracts",
            target_entity_key_field="inst",
            field_mappings=[{"erp_field": "INST", "local_field": "inst"}],
            unique_erp_field="INST",
            unique_local_field="inst",
        )
        db_session.add(Contract(inst=1, trdr="1001"))
        db_session.commit()

        run = make_controller(make_erp_client()).run_sync(integration.id, full_resync=True)

        assert run.status == SyncRunStatus.error
        assert "not supported" in run.error
        assert db_session.scalars(select(Contract)).all() != []

    def test_lines_need_contracts(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(
            source_table="INSTLINES",
            target_entity="contract_lines",
            target_entity_key_field="instlines",
            field_mappings=LINE_MAPPINGS,
            unique_erp_field="INSTLINES",
            unique_local_field="instlines",
        )
        client = make_erp_client([{"INSTLINES": "1", "INST": "1", "PRICE": "1"}])

        run = make_controller(client).run_sync(integration.id, full_resync=True)

        assert run.status == SyncRunStatus.error
        assert "requires contracts" in run.error
        assert client.fetch_calls == []

    def test_lines_resync_with_contracts(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(
            source_table="INSTLINES",
            target_entity="contract_lines",
            target_entity_key_field="instlines",
            field_mappings=LINE_MAPPINGS,
            unique_erp_field="INSTLINES",
            unique_local_field="instlines",
        )
        db_session.add(Contract(inst=1, trdr="1001"))
        db_session.commit()
        db_session.add(ContractLine(instlines=99, inst=1, linenum=1))
        db_session.commit()
        client = make_erp_client(
            [
                {"INSTLINES": "1", "INST": "1", "PRICE": "1"},
                {"INSTLINES": "2", "INST": "7", "PRICE": "1"},
            ]
        )

        run = make_controller(client).run_sync(integration.id, full_resync=True)

        assert run.status == SyncRunStatus.success
        lines = db_session.scalars(select(ContractLine)).all()
        assert [(line.instlines, line.linenum) for line in lines] == [(1, 1)]
        assert run.stats["erp_to_local"]["skip_reasons"] == {"PARENT_NOT_FOUND": 1}

    def test_discards_pending_cursor(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration()
        client = make_erp_client(_customer_rows(7))
        client.fetch_errors[3] = ErpTransientError("ERP timeout")
        controller = _paged_controller(make_controller, client)
        partial = controller.run_sync(integration.id)

        run = controller.run_sync(integration.id, full_resync=True)

        assert run.id != partial.id
        assert run.status == SyncRunStatus.success
        db_session.refresh(partial)
        assert partial.details["superseded_by_full_resync"] is True
        assert len(_customers(db_session)) == 7


# ---------------------------------------------------------------------------
# Incremental filter
# ---------------------------------------------------------------------------


class TestIncrementalFilter:
    def _controller(self, make_controller, make_erp_client):
        return make_controller(make_erp_client(), erp_timezone="Europe/Athens")

    def test_cron_run_reads_changes_since_last_sync(self, make_integration, make_erp_client, make_controller):
        integration = make_integration(
            modified_field="UPDDATE",
            last_synced_at=datetime(2024, 6, 1, 9, 0, tzinfo=UTC),
        )
        controller = self._controller(make_controller, make_erp_client)
        config = load_sync_config(integration, default_registry)

        expr = controller.build_filter(config, integration, SyncTrigger.cron, full_resync=False)

        assert expr == "UPDDATE>'2024-06-01 12:00:00'"

    def test_base_filter_is_kept(self, make_integration, make_erp_client, make_controller):
        integration = make_integration(
            modified_field="UPDDATE",
            filter="ISACTIVE=1",
            last_synced_at=datetime(2024, 1, 10, 9, 0, tzinfo=UTC),
        )
        controller = self._controller(make_controller, make_erp_client)
        config = load_sync_config(integration, default_registry)

        expr = controller.build_filter(config, integration, SyncTrigger.cron, full_resync=False)

        assert expr == "(ISACTIVE=1) AND UPDDATE>'2024-01-10 11:00:00'"

    def test_manual_and_full_resync_read_everything(self, make_integration, make_erp_client, make_controller):
        integration = make_integration(
            modified_field="UPDDATE",
            last_synced_at=datetime(2024, 6, 1, 9, 0, tzinfo=UTC),
        )
        controller = self._controller(make_controller, make_erp_client)
        config = load_sync_config(integration, default_registry)

        assert controller.build_filter(config, integration, SyncTrigger.manual, full_resync=False) == "1=1"
        assert controller.build_filter(config, integration, SyncTrigger.cron, full_resync=True) == "1=1"

    def test_first_cron_run_reads_everything(self, make_integration, make_erp_client, make_controller):
        integration = make_integration(modified_field="UPDDATE")
        client = make_erp_client(_customer_rows(1))

        run = make_controller(client).run_sync(integration.id, trigger="cron")

        assert run.trigger == SyncTrigger.cron
        assert client.fetch_calls[0]["filter"] == "1=1"


# ---------------------------------------------------------------------------
# Two-way integrations
# ---------------------------------------------------------------------------


class TestTwoWay:
    def test_new_local_row_is_pushed(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(sync_direction=SyncDirection.two_way)
        db_session.add(Customer(name="Walk-in", email="walkin@example.test"))
        db_session.commit()
        client = make_erp_client([])

        run = make_controller(client).run_sync(integration.id)

        assert run.status == SyncRunStatus.success
        assert run.stats["local_to_erp"]["created"] == 1
        assert client.pushed[0]["key"] == ""
        assert client.pushed[0]["payload"] == {"NAME": "Walk-in", "EMAIL": "walkin@example.test"}
        customer = _customers(db_session)[0]
        assert customer.trdr == "9001"
        assert as_utc(customer.erp_synced_at) == as_utc(customer.updated_at)

    def test_conflict_is_counted(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(sync_direction=SyncDirection.two_way, modified_field="UPDDATE")
        db_session.add(
            Customer(
                trdr="1001",
                name="Edited locally",
                erp_synced_at=datetime(2024, 6, 1, 10, 0, tzinfo=UTC),
                updated_at=datetime(2024, 6, 1, 11, 0, tzinfo=UTC),
            )
        )
        db_session.commit()
        client = make_erp_client([{"TRDR": "1001", "NAME": "From ERP", "UPDDATE": "2024-06-02 09:00:00"}])

        run = make_controller(client, erp_timezone="Europe/Athens").run_sync(integration.id)

        assert run.status == SyncRunStatus.success
        assert run.stats["erp_to_local"]["updated"] == 1
        assert run.stats["local_to_erp"]["skip_reasons"] == {"CONFLICT_ERP_WINS": 1}
        assert client.pushed == []
        assert _customers(db_session)[0].name == "From ERP"

    def test_push_auth_error_gives_partial(self, db_session, make_integration, make_erp_client, make_controller):
        integration = make_integration(sync_direction=SyncDirection.two_way)
        db_session.add(Customer(name="Walk-in"))
        db_session.commit()
        client = make_erp_client([])
        client.push_error = ErpAuthError("Session expired")

        run = make_controller(client).run_sync(integration.id)

        assert run.status == SyncRunStatus.partial
        assert run.error == "Push aborted: Session expired"
        assert db_session.get(SyncCursor, integration.id) is None
