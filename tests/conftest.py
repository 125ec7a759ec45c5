import base64
import os
import uuid
from dataclasses import replace

# Settings are read at import time.
os.environ.setdefault("ENCRYPTION_KEY", base64.b64encode(b"parksync-test-key-0123456789abcd").decode())
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest  # noqa: E402
from dotenv import load_dotenv  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import parksync.models  # noqa: F401,E402
from parksync.config import settings  # noqa: E402
from parksync.db import Base  # noqa: E402
from parksync.models.integration import ErpConnection, Integration, SyncDirection  # noqa: E402
from parksync.services.erp_sync.client import ErpPage  # noqa: E402
from parksync.services.erp_sync.controller import SyncController  # noqa: E402
from parksync.services.secrets import encrypt_secret  # noqa: E402

load_dotenv(os.path.join(os.getcwd(), ".env"))


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            # SQLAlchemy emits BEGIN itself so SAVEPOINTs work under pysqlite
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


# ---------------------------------------------------------------------------
# ERP doubles
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeErpClient:
    """In-memory ERP table with the ``ErpClient`` interface."""

    def __init__(self, rows=None, token="client-token", clock=None, fetch_seconds=0.0):
        self.rows = list(rows or [])
        self.token = token
        self.clock = clock
        self.fetch_seconds = fetch_seconds
        self.auth_error = None
        self.fetch_errors = {}
        self.push_error = None
        self.push_errors = {}
        self.fetch_calls = []
        self.pushed = []
        self.credentials = None
        self.closed = False
        self._next_id = 9000

    def authenticate(self, credentials):
        self.credentials = credentials
        if self.auth_error is not None:
            raise self.auth_error
        return self.token

    def fetch_page(self, token, table, fields, filter_expr, offset, page_size):
        self.fetch_calls.append(
            {
                "token": token,
                "table": table,
                "fields": list(fields),
                "filter": filter_expr,
                "offset": offset,
                "page_size": page_size,
            }
        )
        if self.clock is not None:
            self.clock.advance(self.fetch_seconds)
        error = self.fetch_errors.pop(offset, None)
        if error is not None:
            raise error
        rows = [dict(row) for row in self.rows[offset : offset + page_size]]
        return ErpPage(rows=rows, total_count=len(self.rows))

    def push_row(self, token, table, key, payload, object_name=None):
        self.pushed.append(
            {"token": token, "table": table, "key": key, "payload": dict(payload), "object": object_name}
        )
        if self.push_error is not None:
            raise self.push_error
        error = self.push_errors.get(key)
        if error is not None:
            raise error
        if key:
            return key
        self._next_id += 1
        return str(self._next_id)

    def close(self):
        self.closed = True


@pytest.fixture()
def erp_client():
    return FakeErpClient()


@pytest.fixture()
def fake_clock():
    return FakeClock()


@pytest.fixture()
def make_erp_client():
    return FakeErpClient


# ---------------------------------------------------------------------------
# Integration factories
# ---------------------------------------------------------------------------

CUSTOMER_MAPPINGS = [
    {"erp_field": "TRDR", "local_field": "trdr"},
    {"erp_field": "CODE", "local_field": "code"},
    {"erp_field": "NAME", "local_field": "name"},
    {"erp_field": "EMAIL", "local_field": "email"},
    {"erp_field": "UPDDATE", "local_field": "upddate"},
]

CONTRACT_MAPPINGS = [
    {"erp_field": "INST", "local_field": "inst"},
    {"erp_field": "CODE", "local_field": "code"},
    {"erp_field": "NAME", "local_field": "name"},
    {"erp_field": "TRDR", "local_field": "trdr"},
    {"erp_field": "FROMDATE", "local_field": "from_date"},
]

LINE_MAPPINGS = [
    {"erp_field": "INSTLINES", "local_field": "instlines"},
    {"erp_field": "INST", "local_field": "inst"},
    {"erp_field": "MTRL", "local_field": "mtrl"},
    {"erp_field": "PRICE", "local_field": "price"},
    {"erp_field": "QTY", "local_field": "qty"},
]


def _make_connection(db, **overrides):
    data = {
        "name": f"softone-{uuid.uuid4().hex[:8]}",
        "base_url": "https://erp.example.test/s1services",
        "username": "sync",
        "password_enc": encrypt_secret("s3cret"),
        "app_id": 1001,
        "company": "1000",
        "branch": "1000",
        "module": "0",
        "refid": "1",
        "version": "1",
        **overrides,
    }
    connection = ErpConnection(**data)
    db.add(connection)
    db.commit()
    return connection


def _make_integration(db, connection=None, **overrides):
    connection = connection or _make_connection(db)
    data = {
        "name": f"Customers {uuid.uuid4().hex[:6]}",
        "connection_id": connection.id,
        "source_table": "TRDR",
        "target_entity": "customers",
        "target_entity_key_field": "trdr",
        "field_mappings": CUSTOMER_MAPPINGS,
        "unique_erp_field": "TRDR",
        "unique_local_field": "trdr",
        "sync_direction": SyncDirection.one_way,
        **overrides,
    }
    integration = Integration(**data)
    db.add(integration)
    db.commit()
    return integration


@pytest.fixture()
def erp_connection(db_session):
    return _make_connection(db_session)


@pytest.fixture()
def make_integration(db_session, erp_connection):
    def _factory(**overrides):
        overrides.setdefault("connection", erp_connection)
        return _make_integration(db_session, **overrides)

    return _factory


@pytest.fixture()
def make_controller(db_session):
    """Build a controller wired to a fake ERP client and test settings."""

    def _factory(client, clock=None, **setting_overrides):
        return SyncController(
            db_session,
            client_factory=lambda _connection: client,
            app_settings=replace(settings, **setting_overrides),
            clock=clock or FakeClock(),
            owner="test-worker",
        )

    return _factory
