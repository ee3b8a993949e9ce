"""Configuration for the database operations subsystem.

Settings are pydantic models so invalid values fail fast at startup. They are
read from ``DBOPS_*`` environment variables, optionally seeded from ``.env``
and ``.env.local`` files in the working directory.
"""

import os
from enum import Enum
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

SYSTEM_TABLES = (
    'query_performance_log',
    'backup_metadata',
    'table_statistics',
    'optimization_suggestions',
    'system_performance_snapshots',
)

DEFAULT_DATABASE_URL = 'sqlite:///./data/app.db'


class BackupSchedule(str, Enum):
    """Cadence of automatic backups."""

    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'

    @property
    def interval_hours(self) -> int:
        return {'daily': 24, 'weekly': 168, 'monthly': 720}[self.value]


class BackupConfig(BaseModel):
    """Backup feature settings."""

    model_config = ConfigDict(extra='forbid')

    enabled: bool = True
    schedule: BackupSchedule = BackupSchedule.DAILY
    retention_days: int = Field(default=30, ge=1)
    compression_enabled: bool = True
    storage_path: str = './data/backups'
    excluded_tables: List[str] = Field(
        default_factory=lambda: [*SYSTEM_TABLES, 'alembic_version'],
        description='Tables never exported or dropped by backup and restore',
    )


class QueryOptimizerConfig(BaseModel):
    """Query instrumentation settings."""

    model_config = ConfigDict(extra='forbid')

    slow_query_threshold_ms: float = Field(default=1000.0, gt=0)
    enable_logging: bool = True
    cache_ttl_seconds: int = Field(default=300, ge=0)


class MonitoringConfig(BaseModel):
    """Health monitoring and snapshot settings."""

    model_config = ConfigDict(extra='forbid')

    enable_real_time_stats: bool = True
    performance_snapshot_interval_minutes: int = Field(default=60, ge=1)
    auto_optimization: bool = False
    log_retention_days: int = Field(default=30, ge=1)


class DatabaseManagerConfig(BaseModel):
    """Top-level settings owned by the DatabaseManager."""

    model_config = ConfigDict(extra='forbid')

    database_url: str = DEFAULT_DATABASE_URL
    backup: BackupConfig = Field(default_factory=BackupConfig)
    query_optimizer: QueryOptimizerConfig = Field(default_factory=QueryOptimizerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


def load_env_files(*filepaths: str) -> None:
    """Load environment variables from dotenv files that exist.

    Values already present in the environment win over file values.
    """
    for filepath in filepaths:
        if Path(filepath).exists():
            load_dotenv(dotenv_path=filepath, override=False)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> DatabaseManagerConfig:
    """Build the configuration from the environment.

    Environment variables:
        DBOPS_DATABASE_URL: SQLAlchemy SQLite URL (default: sqlite:///./data/app.db)
        DBOPS_BACKUP_ENABLED: Enable automatic backups (default: true)
        DBOPS_BACKUP_SCHEDULE: daily, weekly or monthly (default: daily)
        DBOPS_BACKUP_RETENTION_DAYS: Days to keep backup metadata (default: 30)
        DBOPS_BACKUP_COMPRESSION: Gzip backup payloads (default: true)
        DBOPS_BACKUP_STORAGE_PATH: Directory for backup payloads
        DBOPS_SLOW_QUERY_THRESHOLD_MS: Slow query threshold (default: 1000)
        DBOPS_QUERY_LOGGING: Persist query metrics (default: true)
        DBOPS_QUERY_CACHE_TTL_SECONDS: Metric cache TTL (default: 300)
        DBOPS_REAL_TIME_STATS: Produce hourly snapshots (default: true)
        DBOPS_SNAPSHOT_INTERVAL_MINUTES: Snapshot interval (default: 60)
        DBOPS_AUTO_OPTIMIZATION: Daily comprehensive optimization (default: false)
        DBOPS_LOG_RETENTION_DAYS: Days to keep query log rows (default: 30)

    Returns:
        Validated DatabaseManagerConfig

    Raises:
        pydantic.ValidationError: If any value is out of range
    """
    load_env_files('.env', '.env.local')

    backup = BackupConfig(
        enabled=_env_bool('DBOPS_BACKUP_ENABLED', True),
        schedule=os.getenv('DBOPS_BACKUP_SCHEDULE', BackupSchedule.DAILY.value),
        retention_days=int(os.getenv('DBOPS_BACKUP_RETENTION_DAYS', '30')),
        compression_enabled=_env_bool('DBOPS_BACKUP_COMPRESSION', True),
        storage_path=os.getenv('DBOPS_BACKUP_STORAGE_PATH', './data/backups'),
    )
    query_optimizer = QueryOptimizerConfig(
        slow_query_threshold_ms=float(os.getenv('DBOPS_SLOW_QUERY_THRESHOLD_MS', '1000')),
        enable_logging=_env_bool('DBOPS_QUERY_LOGGING', True),
        cache_ttl_seconds=int(os.getenv('DBOPS_QUERY_CACHE_TTL_SECONDS', '300')),
    )
    monitoring = MonitoringConfig(
        enable_real_time_stats=_env_bool('DBOPS_REAL_TIME_STATS', True),
        performance_snapshot_interval_minutes=int(os.getenv('DBOPS_SNAPSHOT_INTERVAL_MINUTES', '60')),
        auto_optimization=_env_bool('DBOPS_AUTO_OPTIMIZATION', False),
        log_retention_days=int(os.getenv('DBOPS_LOG_RETENTION_DAYS', '30')),
    )

    return DatabaseManagerConfig(
        database_url=os.getenv('DBOPS_DATABASE_URL', DEFAULT_DATABASE_URL),
        backup=backup,
        query_optimizer=query_optimizer,
        monitoring=monitoring,
    )
