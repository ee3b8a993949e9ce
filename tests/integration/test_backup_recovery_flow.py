"""Integration test: migrated file-backed store through backup, damage and recovery.

Runs the alembic migrations against a SQLite file, then drives the
DatabaseManager the way the maintenance script and the API would.
"""

from datetime import timedelta
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config

from conftest import create_app_tables, fetch_rows, object_names
from dbops.lib.backup_storage import LocalBackupStorage
from dbops.lib.config import SYSTEM_TABLES, BackupConfig, DatabaseManagerConfig
from dbops.lib.database import create_store_engine
from dbops.models.backup import BackupType
from dbops.models.system_health import HealthLevel
from dbops.services.database_manager import DatabaseManager

pytestmark = pytest.mark.integration

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def run_migrations(database_url: str) -> None:
  config = Config()
  config.set_main_option('script_location', str(PROJECT_ROOT / 'migrations'))
  config.set_main_option('sqlalchemy.url', database_url)
  command.upgrade(config, 'head')


@pytest.fixture
def file_store(tmp_path):
  """Migrated SQLite file with the sample application tables."""
  database_url = f'sqlite:///{tmp_path / "app.db"}'
  run_migrations(database_url)
  engine = create_store_engine(database_url)
  create_app_tables(engine)
  yield database_url, engine
  engine.dispose()


@pytest.fixture
def file_manager(file_store, tmp_path, clock):
  database_url, engine = file_store
  config = DatabaseManagerConfig(
    database_url=database_url,
    backup=BackupConfig(storage_path=str(tmp_path / 'backups')),
  )
  return DatabaseManager(engine, config, storage=LocalBackupStorage(tmp_path / 'backups'), clock=clock)


class TestBackupRecoveryFlow:
  def test_migrations_create_every_system_table(self, file_store):
    _, engine = file_store

    tables = object_names(engine, 'table')

    assert set(SYSTEM_TABLES) <= set(tables)
    assert 'alembic_version' in tables

  def test_full_lifecycle(self, file_manager, file_store, clock):
    _, engine = file_store

    # Startup: nothing missing, WAL journaling, initial full backup
    assert file_manager.initialize() == []
    assert fetch_rows(engine, 'PRAGMA journal_mode') == [('wal',)]
    initial = file_manager.backup_manager.get_last_backup()
    assert initial.backup_type == BackupType.FULL
    assert initial.tables == ['audit_events', 'orders', 'users']

    # Workload through the instrumented path
    optimizer = file_manager.query_optimizer
    for user_id in (1, 2, 3):
      optimizer.execute_with_metrics('SELECT * FROM orders WHERE user_id = :uid', {'uid': user_id})
    optimizer.execute_with_metrics(
      "INSERT INTO users (id, email, created_at) VALUES (4, 'new@example.com', :ts)",
      {'ts': (clock() + timedelta(minutes=1)).isoformat(sep=' ')},
    )

    # A day later the scheduler takes an incremental backup with the new user
    clock.advance(hours=25)
    file_manager.tick()
    incremental = file_manager.backup_manager.get_last_backup()
    assert incremental.backup_type == BackupType.INCREMENTAL
    assert 'users' in incremental.tables

    # Damage: orders wiped, users table dropped
    with engine.begin() as conn:
      conn.exec_driver_sql('DROP VIEW user_order_totals')
      conn.exec_driver_sql('DELETE FROM orders')
      conn.exec_driver_sql('DROP TABLE users')

    clock.advance(minutes=5)
    result = file_manager.emergency_recovery(initial.id)

    assert result.health.overall != HealthLevel.CRITICAL
    assert fetch_rows(engine, 'SELECT COUNT(*) FROM users') == [(3,)]
    assert fetch_rows(engine, 'SELECT COUNT(*) FROM orders') == [(3,)]
    assert object_names(engine, 'view') == ['user_order_totals']
    emergency = file_manager.backup_manager.get_backup_metadata(result.emergency_backup_id)
    assert 'users' not in emergency.tables

    # The incremental backup brings back the user created after the full one
    file_manager.backup_manager.restore_from_backup(incremental.id)
    assert fetch_rows(engine, 'SELECT email FROM users WHERE id = 4') == [('new@example.com',)]

    # Query history survived the restores, so maintenance still sees it
    summary = file_manager.perform_routine_maintenance()
    assert summary.integrity_ok is True
    assert 'idx_orders_user_id' not in summary.unused_indexes

    health = file_manager.get_system_health()
    assert health.database.error_rate == 0.0
    assert health.backup.last_backup_time == clock()
