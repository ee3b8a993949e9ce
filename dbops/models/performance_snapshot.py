from sqlalchemy import Column, DateTime, Float, Index, Integer, String

from dbops.lib.database import Base, utcnow


class PerformanceSnapshotRecord(Base):
  """Periodic summary of the query log (hourly or daily)."""

  __tablename__ = 'system_performance_snapshots'

  id = Column(Integer, primary_key=True, autoincrement=True)
  snapshot_type = Column(String(10), nullable=False)
  total_queries = Column(Integer, nullable=False, default=0)
  avg_query_time = Column(Float, nullable=False, default=0.0)
  slow_queries = Column(Integer, nullable=False, default=0)
  failed_queries = Column(Integer, nullable=False, default=0)
  cache_hit_rate = Column(Float, nullable=False, default=0.0)
  period_start = Column(DateTime, nullable=False)
  period_end = Column(DateTime, nullable=False)
  created_at = Column(DateTime, nullable=False, default=utcnow)

  __table_args__ = (
    Index('ix_system_performance_snapshots_type_created', 'snapshot_type', 'created_at'),
  )
