from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from dbops.lib.database import Base, utcnow


class QueryPerformanceLog(Base):
  """One row per instrumented statement execution.

  Append-only; pruned by age during routine maintenance.
  """

  __tablename__ = 'query_performance_log'

  id = Column(Integer, primary_key=True, autoincrement=True)
  query_id = Column(String(64), nullable=False)
  sql_hash = Column(String(64), nullable=False)
  sql = Column(Text, nullable=False)
  execution_time = Column(Float, nullable=False)
  rows_returned = Column(Integer, nullable=False, default=0)
  rows_scanned = Column(Integer, nullable=False, default=0)
  indexes_used = Column(Text, nullable=False, default='[]')
  cache_hit = Column(Boolean, nullable=False, default=False)
  query_type = Column(String(16), nullable=True)
  query_pattern = Column(Text, nullable=True)
  error_type = Column(String(255), nullable=True)
  timestamp = Column(DateTime, nullable=False, default=utcnow)

  __table_args__ = (
    Index('ix_query_performance_log_timestamp', 'timestamp'),
    Index('ix_query_performance_log_sql_hash', 'sql_hash'),
  )
