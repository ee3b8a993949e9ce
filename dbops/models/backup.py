"""Backup metadata and restore options."""

import json
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dbops.models.backup_metadata import BackupMetadataRecord

BACKUP_FORMAT_VERSION = '1.0.0'


class BackupType(str, Enum):
  FULL = 'full'
  INCREMENTAL = 'incremental'


class BackupStatus(str, Enum):
  COMPLETED = 'completed'


class BackupMetadata(BaseModel):
  """Description of one stored backup payload.

  Attributes:
      id: ``backup_<timestamp>`` or ``incremental_<timestamp>``
      timestamp: When the backup was taken (UTC)
      backup_type: Full or incremental
      size_bytes: Size of the stored (possibly compressed) payload
      compressed: Payload is gzip-compressed
      encrypted: Payload is encrypted (always False, no cipher is configured)
      checksum: SHA-256 hex of the serialized, uncompressed payload
      tables: Tables contained in the payload
      record_count: Total rows in the payload
      version: Payload format version
      status: Always ``completed``; failed backups leave no metadata
      storage_path: Where the storage backend put the payload
      based_on: Reference time of an incremental backup
  """

  model_config = ConfigDict(extra='forbid', frozen=True)

  id: str = Field(..., min_length=1)
  timestamp: datetime
  backup_type: BackupType
  size_bytes: int = Field(..., ge=0)
  compressed: bool
  encrypted: bool = False
  checksum: str = Field(..., pattern=r'^[0-9a-f]{64}$')
  tables: List[str]
  record_count: int = Field(..., ge=0)
  version: str = BACKUP_FORMAT_VERSION
  status: BackupStatus = BackupStatus.COMPLETED
  storage_path: Optional[str] = None
  based_on: Optional[datetime] = None

  @classmethod
  def from_record(cls, record: BackupMetadataRecord) -> 'BackupMetadata':
    return cls(
      id=record.id,
      timestamp=record.timestamp,
      backup_type=record.backup_type,
      size_bytes=record.size_bytes,
      compressed=bool(record.compressed),
      encrypted=bool(record.encrypted),
      checksum=record.checksum,
      tables=json.loads(record.tables or '[]'),
      record_count=record.record_count,
      version=record.version,
      status=record.status,
      storage_path=record.storage_path,
      based_on=record.based_on,
    )

  def to_record(self) -> BackupMetadataRecord:
    return BackupMetadataRecord(
      id=self.id,
      timestamp=self.timestamp,
      backup_type=self.backup_type.value,
      size_bytes=self.size_bytes,
      compressed=self.compressed,
      encrypted=self.encrypted,
      checksum=self.checksum,
      tables=json.dumps(self.tables),
      record_count=self.record_count,
      version=self.version,
      status=self.status.value,
      storage_path=self.storage_path,
      based_on=self.based_on,
    )


class RestoreOptions(BaseModel):
  """Options for restore_from_backup.

  Attributes:
      drop_existing: Drop tables before restoring. Without a table filter
          every backup-eligible table is dropped, so the result holds exactly
          the backup's tables.
      table_filter: Restrict the restore to these tables
      skip_data: Restore schema objects only
  """

  model_config = ConfigDict(extra='forbid')

  drop_existing: bool = False
  table_filter: Optional[List[str]] = None
  skip_data: bool = False


class RestoreResult(BaseModel):
  model_config = ConfigDict(extra='forbid')

  backup_id: str
  tables_restored: List[str]
  records_restored: int
  dropped_tables: List[str] = Field(default_factory=list)
