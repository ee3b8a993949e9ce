from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from dbops.lib.database import Base


class BackupMetadataRecord(Base):
  """Metadata of a completed backup.

  Written once the payload is stored; never updated afterwards.
  """

  __tablename__ = 'backup_metadata'

  id = Column(String(100), primary_key=True)
  timestamp = Column(DateTime, nullable=False)
  backup_type = Column(String(20), nullable=False)
  size_bytes = Column(Integer, nullable=False)
  compressed = Column(Boolean, nullable=False, default=False)
  encrypted = Column(Boolean, nullable=False, default=False)
  checksum = Column(String(64), nullable=False)
  tables = Column(Text, nullable=False, default='[]')
  record_count = Column(Integer, nullable=False, default=0)
  version = Column(String(20), nullable=False)
  status = Column(String(20), nullable=False, default='completed')
  storage_path = Column(String(1000), nullable=True)
  based_on = Column(DateTime, nullable=True)

  __table_args__ = (Index('ix_backup_metadata_timestamp', 'timestamp'),)
