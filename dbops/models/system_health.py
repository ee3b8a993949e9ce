"""Health, snapshot and orchestration result models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dbops.models.backup import RestoreResult
from dbops.models.performance_snapshot import PerformanceSnapshotRecord
from dbops.models.query_metrics import PerformanceDashboardData


class HealthLevel(str, Enum):
  HEALTHY = 'healthy'
  WARNING = 'warning'
  CRITICAL = 'critical'


class DatabaseStatus(str, Enum):
  CONNECTED = 'connected'
  SLOW = 'slow'
  ERROR = 'error'


class BackupHealthStatus(str, Enum):
  CURRENT = 'current'
  OVERDUE = 'overdue'
  FAILED = 'failed'


class SnapshotType(str, Enum):
  HOURLY = 'hourly'
  DAILY = 'daily'


class DatabaseHealth(BaseModel):
  model_config = ConfigDict(extra='forbid')

  status: DatabaseStatus
  avg_query_time: float = 0.0
  slow_queries: int = 0
  error_rate: float = Field(default=0.0, ge=0, le=100)
  connection_time_ms: Optional[float] = None


class BackupHealth(BaseModel):
  model_config = ConfigDict(extra='forbid')

  status: BackupHealthStatus
  last_backup_time: Optional[datetime] = None
  next_backup_time: Optional[datetime] = None
  backup_size: int = 0


class PerformanceHealth(BaseModel):
  model_config = ConfigDict(extra='forbid')

  cache_hit_rate: float = Field(default=0.0, ge=0, le=100)
  index_efficiency: float = Field(default=0.0, ge=0, le=100)
  pending_optimizations: int = 0
  applied_optimizations: int = 0


class SystemHealthStatus(BaseModel):
  """Composite health, recomputed on every check and never persisted."""

  model_config = ConfigDict(extra='forbid')

  overall: HealthLevel
  database: DatabaseHealth
  backup: BackupHealth
  performance: PerformanceHealth
  checked_at: datetime

  @classmethod
  def critical(cls, checked_at: datetime) -> 'SystemHealthStatus':
    """Worst-case status reported when the health check itself fails."""
    return cls(
      overall=HealthLevel.CRITICAL,
      database=DatabaseHealth(status=DatabaseStatus.ERROR, error_rate=100.0),
      backup=BackupHealth(status=BackupHealthStatus.FAILED),
      performance=PerformanceHealth(),
      checked_at=checked_at,
    )


class PerformanceSnapshot(BaseModel):
  model_config = ConfigDict(extra='forbid', frozen=True)

  id: int
  snapshot_type: SnapshotType
  total_queries: int = Field(..., ge=0)
  avg_query_time: float = Field(..., ge=0)
  slow_queries: int = Field(..., ge=0)
  failed_queries: int = Field(..., ge=0)
  cache_hit_rate: float = Field(..., ge=0, le=100)
  period_start: datetime
  period_end: datetime

  @classmethod
  def from_record(cls, record: PerformanceSnapshotRecord) -> 'PerformanceSnapshot':
    return cls(
      id=record.id,
      snapshot_type=record.snapshot_type,
      total_queries=record.total_queries,
      avg_query_time=record.avg_query_time,
      slow_queries=record.slow_queries,
      failed_queries=record.failed_queries,
      cache_hit_rate=record.cache_hit_rate,
      period_start=record.period_start,
      period_end=record.period_end,
    )


class Recommendation(BaseModel):
  model_config = ConfigDict(extra='forbid')

  id: int
  suggestion_type: str
  priority: str
  title: str
  description: str
  suggested_sql: Optional[str] = None
  created_at: datetime


class PerformanceDashboard(BaseModel):
  """Current figures, hourly trend and open recommendations."""

  model_config = ConfigDict(extra='forbid')

  current: PerformanceDashboardData
  trends: List[PerformanceSnapshot] = Field(default_factory=list)
  recommendations: List[Recommendation] = Field(default_factory=list)


class OptimizationSummary(BaseModel):
  model_config = ConfigDict(extra='forbid')

  indexes_created: List[str] = Field(default_factory=list)
  statistics_updated: bool = False
  backup_completed: bool = False
  backup_id: Optional[str] = None
  optimizations_suggested: int = 0


class MaintenanceSummary(BaseModel):
  model_config = ConfigDict(extra='forbid')

  logs_pruned: int = 0
  unused_indexes: List[str] = Field(default_factory=list)
  integrity_ok: bool = True
  integrity_messages: List[str] = Field(default_factory=list)
  snapshot_id: Optional[int] = None


class RecoveryResult(BaseModel):
  model_config = ConfigDict(extra='forbid')

  backup_id: str
  emergency_backup_id: str
  restore: RestoreResult
  health: SystemHealthStatus
