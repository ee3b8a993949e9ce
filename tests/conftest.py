"""Shared test fixtures and utilities for all tests.

This conftest.py provides reusable fixtures that can be used across
unit, contract, and integration tests: an in-memory store with the system
tables, a controllable clock, sample application tables and pre-wired
services.
"""

import sys
from pathlib import Path

# CRITICAL: Ensure the correct project root is first in sys.path
# This prevents importing from other projects with similar module names
project_root = str(Path(__file__).parent.parent.absolute())
if project_root not in sys.path:
    sys.path.insert(0, project_root)
elif sys.path[0] != project_root:
    sys.path.remove(project_root)
    sys.path.insert(0, project_root)

import json
from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy import text

import dbops.models  # noqa: F401  registers the system tables
from dbops.lib.backup_storage import LocalBackupStorage
from dbops.lib.config import BackupConfig, DatabaseManagerConfig, QueryOptimizerConfig
from dbops.lib.database import Base, create_store_engine, get_session_factory, session_scope
from dbops.lib.sql_analysis import RegexQueryAnalyzer
from dbops.models.query_performance_log import QueryPerformanceLog
from dbops.services.backup_service import BackupManager
from dbops.services.database_manager import DatabaseManager
from dbops.services.query_optimizer import QueryOptimizer, sql_digest

# Wednesday; the next Sunday boundary is 2026-10-18 00:00
START_TIME = datetime(2026, 10, 14, 12, 0, 0)


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock():
    """Controllable clock starting at START_TIME."""
    return FakeClock()


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def engine():
    """In-memory store with every system table created."""
    engine = create_store_engine('sqlite://')
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


APP_SCHEMA = [
    'CREATE TABLE users ('
    ' id INTEGER PRIMARY KEY,'
    ' email TEXT NOT NULL UNIQUE,'
    ' name TEXT,'
    ' avatar BLOB,'
    ' created_at TIMESTAMP,'
    ' updated_at TIMESTAMP)',
    'CREATE TABLE orders ('
    ' id INTEGER PRIMARY KEY,'
    ' user_id INTEGER REFERENCES users(id),'
    ' status TEXT,'
    ' total REAL,'
    ' created_at TIMESTAMP)',
    'CREATE TABLE audit_events (id INTEGER PRIMARY KEY, message TEXT)',
    'CREATE INDEX idx_orders_user_id ON orders(user_id)',
    'CREATE VIEW user_order_totals AS '
    'SELECT u.id AS user_id, SUM(o.total) AS total FROM users u JOIN orders o ON o.user_id = u.id GROUP BY u.id',
]

APP_DATA = [
    "INSERT INTO users VALUES (1, 'ada@example.com', 'Ada', X'89504E47', '2026-10-01 09:00:00', '2026-10-01 09:00:00')",
    "INSERT INTO users VALUES (2, 'grace@example.com', 'Grace', NULL, '2026-10-02 09:00:00', '2026-10-03 10:00:00')",
    "INSERT INTO users VALUES (3, 'linus@example.com', NULL, NULL, '2026-10-05 09:00:00', NULL)",
    "INSERT INTO orders VALUES (1, 1, 'open', 19.5, '2026-10-06 08:00:00')",
    "INSERT INTO orders VALUES (2, 1, 'shipped', 5.25, '2026-10-07 08:00:00')",
    "INSERT INTO orders VALUES (3, 2, 'open', 100.0, '2026-10-08 08:00:00')",
    "INSERT INTO audit_events VALUES (1, 'user 1 signed in')",
    "INSERT INTO audit_events VALUES (2, 'user 2 signed in')",
]


def create_app_tables(engine) -> None:
    """Create and populate the sample application tables."""
    with engine.begin() as conn:
        for statement in APP_SCHEMA + APP_DATA:
            conn.exec_driver_sql(statement)


@pytest.fixture
def app_tables(engine):
    """Sample application tables: users (created/updated), orders (created), audit_events (neither)."""
    create_app_tables(engine)
    return ['audit_events', 'orders', 'users']


def fetch_rows(engine, sql: str) -> List[tuple]:
    with engine.connect() as conn:
        return [tuple(row) for row in conn.execute(text(sql)).all()]


def object_names(engine, object_type: str) -> List[str]:
    with engine.connect() as conn:
        return conn.execute(
            text('SELECT name FROM sqlite_master WHERE type = :type ORDER BY name'), {'type': object_type}
        ).scalars().all()


# ============================================================================
# Query Log Utilities
# ============================================================================

def insert_log_rows(
    session_factory,
    sql: str,
    count: int,
    execution_time: float,
    start: datetime,
    spacing: timedelta = timedelta(minutes=1),
    indexes_used: Optional[List[str]] = None,
    cache_hit: bool = False,
    error_type: Optional[str] = None,
) -> None:
    """Seed query_performance_log rows as if ``sql`` had been executed ``count`` times."""
    pattern = RegexQueryAnalyzer().analyze(sql)
    with session_scope(session_factory) as session:
        for i in range(count):
            session.add(
                QueryPerformanceLog(
                    query_id=sql_digest(sql)[:16],
                    sql_hash=sql_digest(sql),
                    sql=sql,
                    execution_time=execution_time,
                    rows_returned=1,
                    rows_scanned=2,
                    indexes_used=json.dumps(indexes_used or []),
                    cache_hit=cache_hit,
                    query_type=pattern.query_type,
                    query_pattern=json.dumps(pattern.to_dict()),
                    error_type=error_type,
                    timestamp=start + spacing * i,
                )
            )


@pytest.fixture
def seed_query_log(session_factory):
    """Fixture that provides the insert_log_rows utility bound to the test store.

    Example:
        def test_something(seed_query_log, clock):
            seed_query_log('SELECT 1', count=5, execution_time=10, start=clock())
    """

    def _seed(sql: str, count: int, execution_time: float, start: datetime, **kwargs):
        insert_log_rows(session_factory, sql, count, execution_time, start, **kwargs)

    return _seed


def count_log_rows(session_factory, **filters) -> int:
    with session_scope(session_factory) as session:
        return session.query(QueryPerformanceLog).filter_by(**filters).count()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / 'backups'


@pytest.fixture
def storage(backup_dir):
    return LocalBackupStorage(backup_dir)


@pytest.fixture
def manager_config(backup_dir):
    return DatabaseManagerConfig(
        database_url='sqlite://',
        backup=BackupConfig(storage_path=str(backup_dir)),
    )


@pytest.fixture
def optimizer(engine, session_factory, clock):
    return QueryOptimizer(engine, session_factory, config=QueryOptimizerConfig(), clock=clock)


@pytest.fixture
def backup_manager(engine, session_factory, manager_config, storage, clock):
    return BackupManager(engine, session_factory, config=manager_config.backup, storage=storage, clock=clock)


@pytest.fixture
def database_manager(engine, manager_config, storage, clock):
    return DatabaseManager(engine, manager_config, storage=storage, clock=clock)
