"""Exceptions raised by the database operations subsystem.

Instrumentation failures (metric logging, plan introspection) never surface as
exceptions. Everything here is an operational or integrity failure that the
caller has to react to.
"""

from typing import Optional


class DatabaseOperationsError(Exception):
  """Base class for all dbops errors."""

  pass


class BackupError(DatabaseOperationsError):
  """Raised when a backup or restore cannot be completed."""

  pass


class NothingToBackupError(BackupError):
  """Raised when an incremental backup finds no changed rows."""

  def __init__(self, since):
    self.since = since
    super().__init__(f'No rows changed since {since.isoformat()}; nothing to back up')


class BackupNotFoundError(BackupError):
  """Raised when no metadata exists for a requested backup id."""

  def __init__(self, backup_id: str):
    self.backup_id = backup_id
    super().__init__(f'Backup not found: {backup_id}')


class BackupIntegrityError(BackupError):
  """Raised when a payload checksum does not match its metadata."""

  def __init__(self, backup_id: str, expected: str, actual: str):
    self.backup_id = backup_id
    self.expected = expected
    self.actual = actual
    super().__init__(
      f'Checksum mismatch for backup {backup_id}: expected {expected[:12]}..., got {actual[:12]}...'
    )


class StatisticsRefreshError(DatabaseOperationsError):
  """Raised when ANALYZE or the per-table statistics refresh fails."""

  pass


class RecoveryFailedError(DatabaseOperationsError):
  """Raised when the store is still critical after an emergency restore."""

  def __init__(self, backup_id: str, emergency_backup_id: Optional[str] = None):
    self.backup_id = backup_id
    self.emergency_backup_id = emergency_backup_id
    message = f'Emergency recovery from {backup_id} left the database in critical state'
    if emergency_backup_id:
      message += f'; pre-recovery state saved as {emergency_backup_id}'
    super().__init__(message)
