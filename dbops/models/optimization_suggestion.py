from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text

from dbops.lib.database import Base, utcnow


class OptimizationSuggestionRecord(Base):
  """Durable copy of a high-priority optimization suggestion."""

  __tablename__ = 'optimization_suggestions'

  id = Column(Integer, primary_key=True, autoincrement=True)
  suggestion_type = Column(String(20), nullable=False)
  priority = Column(String(10), nullable=False)
  target_query_pattern = Column(Text, nullable=True)
  suggestion_title = Column(String(255), nullable=False)
  suggestion_description = Column(Text, nullable=False)
  suggested_sql = Column(Text, nullable=True)
  estimated_improvement = Column(Float, nullable=True)
  status = Column(String(20), nullable=False, default='pending')
  created_at = Column(DateTime, nullable=False, default=utcnow)
  applied_at = Column(DateTime, nullable=True)

  __table_args__ = (Index('ix_optimization_suggestions_status', 'status'),)
