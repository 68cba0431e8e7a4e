"""
Test configuration and fixtures.
"""
import os
import tempfile
import threading
import time
from concurrent.futures import Future
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

# Point the store at a throwaway SQLite file before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="ingestion-engine-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT}/store.db"
os.environ["UPLOAD_DIR"] = f"{_TEST_ROOT}/uploads"
os.environ["EXPORT_DIR"] = f"{_TEST_ROOT}/exports"

from ingestion_engine.core.config import Settings, get_settings
from ingestion_engine.core.deps import get_job_manager
from ingestion_engine.db.base import Base
from ingestion_engine.db.session import SessionLocal, engine
from ingestion_engine.main import app
from ingestion_engine.schemas.connection import ConnectionConfig, SourceDescriptor, SourceKind
from ingestion_engine.schemas.ingestion import IngestionConfig
from ingestion_engine.schemas.mapping import ColumnMappingIn, MappingCreate
from ingestion_engine.services.job_manager import IngestionJobManager
from ingestion_engine.services.mapping_registry import MappingRegistry
from ingestion_engine.services.sources import dispose_engines
import ingestion_engine.models  # noqa: F401


class InlineExecutor:
    """Runs submitted jobs synchronously in the caller's thread."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass


class DeferredExecutor:
    """Holds submitted jobs until the test runs them."""

    def __init__(self):
        self.pending: List[Callable[[], None]] = []

    def submit(self, fn, *args, **kwargs) -> Future:
        self.pending.append(lambda: fn(*args, **kwargs))
        return Future()

    def run_all(self) -> None:
        while self.pending:
            self.pending.pop(0)()

    def shutdown(self, wait: bool = True) -> None:
        pass


class FakeClock:
    """Deterministic clock; every reading advances it by ``step``."""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, 0), step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = self.current
            self.current = now + self.step
            return now

    def advance(self, **kwargs) -> None:
        with self._lock:
            self.current += timedelta(**kwargs)


class FakeTimer:
    """Stop watchdog that only fires when the test says so."""

    created: List["FakeTimer"] = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args, **self.kwargs)


@pytest.fixture(autouse=True)
def store() -> Generator[None, None, None]:
    """Fresh job and mapping tables for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    FakeTimer.created.clear()
    yield
    dispose_engines()


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create a database session for the test."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with per-test upload and export directories."""
    upload_dir = tmp_path / "uploads"
    export_dir = tmp_path / "exports"
    upload_dir.mkdir()
    export_dir.mkdir()
    return Settings(
        DATABASE_URL=os.environ["DATABASE_URL"],
        UPLOAD_DIR=str(upload_dir),
        EXPORT_DIR=str(export_dir),
        RETRY_BACKOFF_SECONDS=0.5,
        RETRY_BACKOFF_MAX_SECONDS=30.0,
        EXPORT_CHUNK_ROWS=2,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff delays requested by jobs, in order."""
    return []


@pytest.fixture
def manager(settings: Settings, clock: FakeClock, sleeps: List[float]) -> IngestionJobManager:
    """Job manager that runs jobs inline and never really sleeps."""
    return IngestionJobManager(
        SessionLocal,
        settings,
        executor=InlineExecutor(),
        clock=clock,
        sleep=sleeps.append,
        timer_factory=FakeTimer,
    )


@pytest.fixture
def watchdogs() -> List[FakeTimer]:
    """Stop watchdogs created during the test, oldest first."""
    return FakeTimer.created


@pytest.fixture
def deferred_executor() -> DeferredExecutor:
    return DeferredExecutor()


@pytest.fixture
def deferred_manager(settings: Settings, clock: FakeClock, deferred_executor: DeferredExecutor) -> IngestionJobManager:
    """Job manager whose jobs only run when ``deferred_executor.run_all()`` is called."""
    return IngestionJobManager(
        SessionLocal,
        settings,
        executor=deferred_executor,
        clock=clock,
        sleep=lambda _: None,
        timer_factory=FakeTimer,
    )


@pytest.fixture
def wait_for() -> Callable[..., None]:
    def _wait(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not reached in time")
            time.sleep(0.01)
    return _wait


@pytest.fixture
def source_db_url(tmp_path: Path) -> str:
    """
    SQLite source database with a customers and an orders table.

    Customer 3 has no email; customer 5 has no orders.
    """
    url = f"sqlite:///{tmp_path / 'source.db'}"
    source_engine = create_engine(url)
    with source_engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE customers (id INTEGER NOT NULL, name TEXT NOT NULL, email TEXT)"
        ))
        conn.execute(text(
            "INSERT INTO customers (id, name, email) VALUES "
            "(1, 'Ada', 'ada@example.com'), "
            "(2, 'Grace', 'grace@example.com'), "
            "(3, 'Linus', NULL), "
            "(4, 'Barbara', 'barbara@example.com'), "
            "(5, 'Ken', 'ken@example.com')"
        ))
        conn.execute(text(
            "CREATE TABLE orders (order_id INTEGER NOT NULL, customer_id INTEGER NOT NULL, amount REAL)"
        ))
        conn.execute(text(
            "INSERT INTO orders (order_id, customer_id, amount) VALUES "
            "(100, 1, 9.5), (101, 1, 20.0), (102, 2, 5.25), (103, 4, 12.0)"
        ))
    source_engine.dispose()
    return url


@pytest.fixture
def target_db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'target.db'}"


@pytest.fixture
def write_upload(settings: Settings) -> Callable[[str, str], str]:
    """Write a file into the upload directory and return its reference."""
    def _write(name: str, content: str) -> str:
        (Path(settings.UPLOAD_DIR) / name).write_text(content, encoding="utf-8")
        return name
    return _write


def db_descriptor(url: str, table: str) -> SourceDescriptor:
    return SourceDescriptor(
        source_type=SourceKind.DATABASE,
        connection_config=ConnectionConfig(source_kind=SourceKind.DATABASE, url=url),
        table=table,
    )


def file_descriptor(file_ref: str) -> SourceDescriptor:
    return SourceDescriptor(
        source_type=SourceKind.FLATFILE,
        connection_config=ConnectionConfig(source_kind=SourceKind.FLATFILE, file_ref=file_ref),
        table=file_ref,
    )


@pytest.fixture
def create_mapping(db: Session):
    """Save a mapping and return its id."""
    def _create(source: SourceDescriptor, target: SourceDescriptor, columns, name: str = "customers", **config):
        payload = MappingCreate(
            name=name,
            source=source,
            target=target,
            mappings=[
                ColumnMappingIn(
                    source_column=column[0],
                    target_column=column[1],
                    target_type=column[2],
                    transformation=column[3] if len(column) > 3 else None,
                )
                for column in columns
            ],
            config=IngestionConfig(**config),
        )
        return MappingRegistry(db).create(payload).id
    return _create


@pytest.fixture(name="db_descriptor")
def db_descriptor_fixture():
    return db_descriptor


@pytest.fixture(name="file_descriptor")
def file_descriptor_fixture():
    return file_descriptor


@pytest.fixture
def client(settings: Settings, manager: IngestionJobManager) -> Generator[TestClient, None, None]:
    """Create test client with settings and job manager overrides."""
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_job_manager] = lambda: manager

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
