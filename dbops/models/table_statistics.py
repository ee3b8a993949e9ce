from sqlalchemy import Column, DateTime, Float, Integer, String

from dbops.lib.database import Base, utcnow


class TableStatisticsRecord(Base):
  """Latest statistics for one table, replaced on every refresh."""

  __tablename__ = 'table_statistics'

  table_name = Column(String(255), primary_key=True)
  row_count = Column(Integer, nullable=False, default=0)
  avg_row_size = Column(Float, nullable=False, default=0.0)
  index_count = Column(Integer, nullable=False, default=0)
  column_count = Column(Integer, nullable=False, default=0)
  updated_at = Column(DateTime, nullable=False, default=utcnow)
