"""Typed values produced by the query optimizer.

Rows read from the system tables are mapped into these models through
``from_record`` so unknown or malformed shapes fail validation instead of
leaking into callers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dbops.models.table_statistics import TableStatisticsRecord


class SuggestionType(str, Enum):
  INDEX = 'index'
  REWRITE = 'rewrite'
  CACHE = 'cache'
  PARTITION = 'partition'


class SuggestionPriority(str, Enum):
  HIGH = 'high'
  MEDIUM = 'medium'
  LOW = 'low'


class QueryPerformanceMetric(BaseModel):
  """Measurement of a single statement execution.

  Attributes:
      query_id: Digest of the normalized SQL, unless the caller supplied one
      sql: Statement text as executed
      execution_time: Wall-clock time of the one execution, in milliseconds
      rows_returned: Rows fetched by the caller
      rows_scanned: Estimated rows examined (heuristic, not exact)
      indexes_used: Index names reported by EXPLAIN QUERY PLAN, in plan order
      cache_hit: True when served from the metric cache
      timestamp: When the execution finished (UTC)
  """

  model_config = ConfigDict(extra='forbid', frozen=True)

  query_id: str = Field(..., min_length=1)
  sql: str
  execution_time: float = Field(..., ge=0)
  rows_returned: int = Field(default=0, ge=0)
  rows_scanned: int = Field(default=0, ge=0)
  indexes_used: List[str] = Field(default_factory=list)
  cache_hit: bool = False
  timestamp: datetime


@dataclass(frozen=True)
class ExecutionResult:
  """Rows of an instrumented execution together with its metric.

  ``rows`` is None when the metric came from the cache and the statement was
  not run (see ``QueryOptimizer.execute_with_metrics``).
  """

  rows: Optional[List[Any]]
  rowcount: int
  metric: QueryPerformanceMetric

  def all(self) -> List[Any]:
    return list(self.rows or [])

  def first(self) -> Optional[Any]:
    return self.rows[0] if self.rows else None


class OptimizationSuggestion(BaseModel):
  """Advisory output of the query analysis."""

  model_config = ConfigDict(extra='forbid', frozen=True)

  type: SuggestionType
  priority: SuggestionPriority
  message: str
  suggested_sql: Optional[str] = None
  suggested_index: Optional[str] = None


class SlowQueryReport(BaseModel):
  """Aggregated history of one slow query digest."""

  model_config = ConfigDict(extra='forbid')

  query: str
  sql_hash: str
  avg_execution_time: float
  max_execution_time: float
  total_executions: int
  last_executed: datetime
  suggestions: List[OptimizationSuggestion] = Field(default_factory=list)


class IndexUsage(BaseModel):
  """How often an index shows up in recorded query plans."""

  model_config = ConfigDict(extra='forbid')

  index_name: str
  table_name: str
  usage_count: int = Field(..., ge=0)
  last_used: Optional[datetime] = None
  avg_execution_time: float = Field(default=0.0, ge=0)
  effectiveness: float = Field(..., ge=0, le=100)
  unused: bool = False


class SlowQuerySummary(BaseModel):
  model_config = ConfigDict(extra='forbid')

  query: str
  avg_time: float
  count: int


class PerformanceDashboardData(BaseModel):
  """Last-hour figures for dashboards."""

  model_config = ConfigDict(extra='forbid')

  current_connections: int = 1
  total_queries: int = 0
  avg_query_time: float = 0.0
  slow_queries: int = 0
  cache_hit_rate: float = 0.0
  top_slow_queries: List[SlowQuerySummary] = Field(default_factory=list)


class TableStatistics(BaseModel):
  model_config = ConfigDict(extra='forbid', frozen=True)

  table_name: str
  row_count: int = Field(..., ge=0)
  avg_row_size: float = Field(..., ge=0)
  index_count: int = Field(..., ge=0)
  column_count: int = Field(..., ge=0)
  updated_at: datetime

  @classmethod
  def from_record(cls, record: TableStatisticsRecord) -> 'TableStatistics':
    return cls(
      table_name=record.table_name,
      row_count=record.row_count,
      avg_row_size=record.avg_row_size,
      index_count=record.index_count,
      column_count=record.column_count,
      updated_at=record.updated_at,
    )
