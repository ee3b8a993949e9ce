"""Durable storage for serialized backup payloads.

The backup manager only talks to the ``BackupStorage`` interface. Object
storage adapters belong to the deployment; ``LocalBackupStorage`` keeps one
file per backup id in a directory.
"""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'^[A-Za-z0-9_\-]+$')


class BackupStorage(ABC):
    """Stores and retrieves backup payloads keyed by backup id."""

    @abstractmethod
    def upload(self, backup_id: str, payload: bytes) -> str:
        """Store a payload.

        Returns:
            Provider-specific location of the stored payload
        """

    @abstractmethod
    def download(self, backup_id: str) -> bytes:
        """Fetch a payload.

        Raises:
            FileNotFoundError: If nothing is stored under the id
        """

    @abstractmethod
    def delete(self, backup_id: str) -> bool:
        """Remove a payload. Returns False if it did not exist."""


class LocalBackupStorage(BackupStorage):
    """Filesystem storage: ``<directory>/<backup_id>.bak``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, backup_id: str) -> Path:
        if not _SAFE_ID.match(backup_id):
            raise ValueError(f'Invalid backup id: {backup_id!r}')
        return self.directory / f'{backup_id}.bak'

    def upload(self, backup_id: str, payload: bytes) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(backup_id)
        # Write then rename so a crash never leaves a truncated payload
        partial = path.with_suffix('.partial')
        partial.write_bytes(payload)
        partial.replace(path)
        logger.debug(f'Stored backup payload {backup_id} ({len(payload)} bytes) at {path}')
        return str(path)

    def download(self, backup_id: str) -> bytes:
        path = self._path(backup_id)
        if not path.exists():
            raise FileNotFoundError(f'No stored payload for backup {backup_id} at {path}')
        return path.read_bytes()

    def delete(self, backup_id: str) -> bool:
        path = self._path(backup_id)
        if not path.exists():
            return False
        path.unlink()
        return True
