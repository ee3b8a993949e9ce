"""SQLAlchemy models for the system tables and the typed values built from them.

Importing this package registers every system table on ``Base.metadata``.
"""

from dbops.models.backup_metadata import BackupMetadataRecord
from dbops.models.optimization_suggestion import OptimizationSuggestionRecord
from dbops.models.performance_snapshot import PerformanceSnapshotRecord
from dbops.models.query_performance_log import QueryPerformanceLog
from dbops.models.table_statistics import TableStatisticsRecord

__all__ = [
  'BackupMetadataRecord',
  'OptimizationSuggestionRecord',
  'PerformanceSnapshotRecord',
  'QueryPerformanceLog',
  'TableStatisticsRecord',
]
