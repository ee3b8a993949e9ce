"""Logical backups of the application tables.

A backup is one JSON payload ``{metadata, schema, data}`` serialized in a
canonical form. Its SHA-256 checksum is taken over those exact bytes before
optional gzip compression, stored in ``backup_metadata`` and verified before a
restore touches anything.

The subsystem's own bookkeeping tables are excluded from backups (see
``BackupConfig.excluded_tables``), so restoring never rewinds backup history or
the query log.
"""

import base64
import gzip
import hashlib
import json
import logging
import zlib
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import Connection, Engine, func, text
from sqlalchemy.orm import sessionmaker

from dbops.lib import metrics
from dbops.lib.backup_storage import BackupStorage, LocalBackupStorage
from dbops.lib.config import BackupConfig
from dbops.lib.database import list_user_tables, quote_identifier, session_scope, table_columns, utcnow
from dbops.lib.errors import BackupError, BackupIntegrityError, BackupNotFoundError, NothingToBackupError
from dbops.lib.structured_logger import log_event
from dbops.models.backup import BACKUP_FORMAT_VERSION, BackupMetadata, BackupType, RestoreOptions, RestoreResult
from dbops.models.backup_metadata import BackupMetadataRecord

logger = logging.getLogger(__name__)

SCHEMA_OBJECT_TYPES = ('table', 'index', 'trigger', 'view')
CHANGE_TRACKING_COLUMNS = ('updated_at', 'created_at')


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {'__bytes__': base64.b64encode(bytes(value)).decode('ascii')}
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f'Cannot serialize {type(value).__name__} in a backup payload')


def _json_object_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and '__bytes__' in obj:
        return base64.b64decode(obj['__bytes__'])
    return obj


def serialize_backup_payload(payload: Dict[str, Any]) -> bytes:
    """Canonical JSON bytes: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        payload, sort_keys=True, separators=(',', ':'), ensure_ascii=False, default=_json_default
    ).encode('utf-8')


def deserialize_backup_payload(data: bytes) -> Dict[str, Any]:
    return json.loads(data.decode('utf-8'), object_hook=_json_object_hook)


def compute_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_backup_id(prefix: str, timestamp: datetime) -> str:
    """``<prefix>_<ISO timestamp>`` with ':' and '.' replaced by '-'."""
    return f'{prefix}_{timestamp.isoformat().replace(":", "-").replace(".", "-")}'


class BackupManager:
    """Full and incremental backups, restore and schedule decisions."""

    def __init__(
        self,
        engine: Engine,
        session_factory: sessionmaker,
        config: Optional[BackupConfig] = None,
        storage: Optional[BackupStorage] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the backup manager.

        Args:
            engine: Engine over the single store connection
            session_factory: Session factory bound to the same engine
            config: Schedule, retention and compression settings
            storage: Payload storage; defaults to a local directory
            clock: Returns the current naive UTC time
        """
        self.engine = engine
        self.session_factory = session_factory
        self.config = config or BackupConfig()
        self.storage = storage or LocalBackupStorage(self.config.storage_path)
        self._clock = clock

    # ------------------------------------------------------------------
    # Creating backups
    # ------------------------------------------------------------------

    def create_full_backup(self) -> BackupMetadata:
        """Export every eligible table with its schema.

        Returns:
            Metadata of the stored backup

        Raises:
            Exception: Whatever the export, upload or metadata write raised;
                no metadata row exists in that case
        """
        timestamp = self._clock()
        backup_id = make_backup_id('backup', timestamp)
        logger.info(f'Creating full backup {backup_id}')

        try:
            with self.engine.connect() as conn:
                tables = self._eligible_tables(conn)
                data = {table: self._export_rows(conn, table) for table in tables}
                schema = self._export_schema(conn, tables, include_views=True)
            return self._store_backup(backup_id, BackupType.FULL, timestamp, tables, schema, data)
        except Exception as e:
            metrics.record_backup(BackupType.FULL.value, 'failure')
            logger.error(f'Full backup {backup_id} failed: {e}', exc_info=True)
            raise

    def create_incremental_backup(self, last_backup_time: datetime) -> BackupMetadata:
        """Export rows changed since ``last_backup_time``.

        Rows qualify when ``updated_at`` or ``created_at`` is later than the
        reference time, using whichever of the two columns the table has.
        Tables with neither column are exported in full (logged as degraded).

        Args:
            last_backup_time: Reference time, normally the previous backup

        Returns:
            Metadata of the stored backup; ``tables`` lists only tables with
            exported rows

        Raises:
            NothingToBackupError: If no table has changed rows
        """
        timestamp = self._clock()
        backup_id = make_backup_id('incremental', timestamp)
        logger.info(f'Creating incremental backup {backup_id} (changes since {last_backup_time.isoformat()})')

        try:
            with self.engine.connect() as conn:
                data: Dict[str, List[Dict[str, Any]]] = {}
                for table in self._eligible_tables(conn):
                    rows = self._export_changed_rows(conn, table, last_backup_time)
                    if rows:
                        data[table] = rows
                tables = sorted(data)
                schema = self._export_schema(conn, tables, include_views=False)
        except Exception as e:
            metrics.record_backup(BackupType.INCREMENTAL.value, 'failure')
            logger.error(f'Incremental backup {backup_id} failed: {e}', exc_info=True)
            raise

        if not data:
            metrics.record_backup(BackupType.INCREMENTAL.value, 'skipped')
            raise NothingToBackupError(last_backup_time)

        try:
            return self._store_backup(
                backup_id, BackupType.INCREMENTAL, timestamp, tables, schema, data, based_on=last_backup_time
            )
        except Exception as e:
            metrics.record_backup(BackupType.INCREMENTAL.value, 'failure')
            logger.error(f'Incremental backup {backup_id} failed: {e}', exc_info=True)
            raise

    def _eligible_tables(self, conn: Connection) -> List[str]:
        return list_user_tables(conn, exclude=self.config.excluded_tables)

    def _export_rows(
        self, conn: Connection, table: str, where: str = '', params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        statement = text(f'SELECT * FROM {quote_identifier(conn, table)}{where}')
        return [dict(row) for row in conn.execute(statement, params or {}).mappings().all()]

    def _export_changed_rows(self, conn: Connection, table: str, since: datetime) -> List[Dict[str, Any]]:
        columns = set(table_columns(conn, table))
        conditions = [
            f'julianday({quote_identifier(conn, column)}) > julianday(:since)'
            for column in CHANGE_TRACKING_COLUMNS
            if column in columns
        ]
        if not conditions:
            logger.warning(
                f'Table {table} has no updated_at or created_at column; '
                f'exporting all rows into the incremental backup'
            )
            return self._export_rows(conn, table)
        return self._export_rows(conn, table, ' WHERE ' + ' OR '.join(conditions), {'since': since.isoformat(sep=' ')})

    def _export_schema(self, conn: Connection, tables: Sequence[str], include_views: bool) -> List[Dict[str, str]]:
        rows = conn.execute(
            text(
                "SELECT type, name, tbl_name, sql FROM sqlite_master "
                "WHERE type IN ('table', 'index', 'trigger', 'view') AND sql IS NOT NULL "
                "AND name NOT LIKE 'sqlite_%' ORDER BY type, name"
            )
        ).all()
        wanted = set(tables)
        return [
            {'type': row.type, 'name': row.name, 'table': row.tbl_name, 'sql': row.sql}
            for row in rows
            if row.tbl_name in wanted or (include_views and row.type == 'view')
        ]

    def _store_backup(
        self,
        backup_id: str,
        backup_type: BackupType,
        timestamp: datetime,
        tables: List[str],
        schema: List[Dict[str, str]],
        data: Dict[str, List[Dict[str, Any]]],
        based_on: Optional[datetime] = None,
    ) -> BackupMetadata:
        if self.get_backup_metadata(backup_id) is not None:
            raise BackupError(f'Backup {backup_id} already exists')

        record_count = sum(len(rows) for rows in data.values())
        payload = {
            'metadata': {
                'id': backup_id,
                'timestamp': timestamp.isoformat(),
                'backup_type': backup_type.value,
                'version': BACKUP_FORMAT_VERSION,
                'tables': tables,
                'record_count': record_count,
                'based_on': based_on.isoformat() if based_on else None,
            },
            'schema': schema,
            'data': data,
        }
        serialized = serialize_backup_payload(payload)
        checksum = compute_checksum(serialized)
        stored = gzip.compress(serialized, mtime=0) if self.config.compression_enabled else serialized

        storage_path = self.storage.upload(backup_id, stored)
        metadata = BackupMetadata(
            id=backup_id,
            timestamp=timestamp,
            backup_type=backup_type,
            size_bytes=len(stored),
            compressed=self.config.compression_enabled,
            encrypted=False,
            checksum=checksum,
            tables=tables,
            record_count=record_count,
            storage_path=storage_path,
            based_on=based_on,
        )

        try:
            with session_scope(self.session_factory) as session:
                session.add(metadata.to_record())
        except Exception:
            # A payload without metadata can never be restored; remove it
            self._delete_payload(backup_id)
            raise

        metrics.record_backup(
            backup_type.value, 'success', len(stored), timestamp.replace(tzinfo=timezone.utc).timestamp()
        )
        log_event(
            'backup.created',
            context={
                'backup_id': backup_id,
                'backup_type': backup_type.value,
                'tables': len(tables),
                'record_count': record_count,
                'size_bytes': len(stored),
            },
        )
        logger.info(f'Backup {backup_id} stored: {len(tables)} tables, {record_count} records, {len(stored)} bytes')
        return metadata

    def _delete_payload(self, backup_id: str) -> None:
        try:
            self.storage.delete(backup_id)
        except (OSError, ValueError) as e:
            logger.warning(f'Could not delete payload of backup {backup_id}: {e}')

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_from_backup(self, backup_id: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        """Restore tables from a stored backup.

        The payload checksum is verified before anything is dropped or
        written. Tables are recreated first, then rows are written with
        ``INSERT OR REPLACE``, then indexes, triggers and views, all in one
        transaction: a failure at any step leaves the store as it was.
        Foreign key enforcement is off for the duration of the restore.

        Args:
            backup_id: Id of the backup to restore
            options: Drop/filter/skip-data options

        Returns:
            RestoreResult describing what was restored

        Raises:
            BackupNotFoundError: If no metadata exists for the id
            BackupIntegrityError: If the payload does not match its checksum
            BackupError: If the payload cannot be read, or drop_existing is
                requested for an incremental backup
        """
        options = options or RestoreOptions()
        metadata = self.get_backup_metadata(backup_id)
        if metadata is None:
            metrics.record_restore('not_found')
            raise BackupNotFoundError(backup_id)

        if options.drop_existing and metadata.backup_type == BackupType.INCREMENTAL:
            metrics.record_restore('rejected')
            raise BackupError(
                f'Backup {backup_id} is incremental; restore its base full backup before dropping tables'
            )

        payload = self._load_verified_payload(metadata)

        tables = list(metadata.tables)
        if options.table_filter is not None:
            unknown = sorted(set(options.table_filter) - set(tables))
            if unknown:
                logger.warning(f'Tables not in backup {backup_id} ignored by restore filter: {unknown}')
            tables = [table for table in tables if table in set(options.table_filter)]

        schema = [
            obj for obj in payload.get('schema', [])
            if obj['table'] in set(tables) or (options.table_filter is None and obj['type'] == 'view')
        ]

        logger.info(f'Restoring backup {backup_id}: {len(tables)} tables, drop_existing={options.drop_existing}')
        foreign_keys = self._foreign_keys_enabled()
        dropped: List[str] = []
        records = 0
        try:
            with self.engine.begin() as conn:
                if foreign_keys:
                    conn.exec_driver_sql('PRAGMA foreign_keys = OFF')
                # pysqlite opens transactions only before DML, and the pragma
                # above is a no-op inside one; DDL below rolls back with the rows
                conn.exec_driver_sql('BEGIN')

                if options.drop_existing:
                    dropped = self._drop_tables(conn, tables, drop_all=options.table_filter is None)

                existing = self._existing_objects(conn)
                self._replay_schema(conn, schema, ('table',), existing)
                if not options.skip_data:
                    for table in tables:
                        records += self._insert_rows(conn, table, payload.get('data', {}).get(table, []))
                self._replay_schema(conn, schema, ('index', 'trigger', 'view'), existing)
        except Exception as e:
            metrics.record_restore('failure')
            logger.error(f'Restore of backup {backup_id} failed: {e}', exc_info=True)
            raise
        finally:
            if foreign_keys:
                with self.engine.connect() as conn:
                    conn.exec_driver_sql('PRAGMA foreign_keys = ON')

        metrics.record_restore('success')
        log_event(
            'backup.restored',
            context={'backup_id': backup_id, 'tables': len(tables), 'records': records, 'dropped': len(dropped)},
        )
        return RestoreResult(
            backup_id=backup_id,
            tables_restored=tables,
            records_restored=records,
            dropped_tables=dropped,
        )

    def _load_verified_payload(self, metadata: BackupMetadata) -> Dict[str, Any]:
        try:
            stored = self.storage.download(metadata.id)
        except (OSError, ValueError) as e:
            metrics.record_restore('failure')
            raise BackupError(f'Could not read payload of backup {metadata.id}: {e}') from e

        try:
            serialized = gzip.decompress(stored) if metadata.compressed else stored
        except (OSError, EOFError, zlib.error):
            # A payload that is not valid gzip cannot match its checksum
            serialized = stored

        actual = compute_checksum(serialized)
        if actual != metadata.checksum:
            metrics.record_restore('integrity_failure')
            log_event(
                'backup.integrity_failed',
                level='ERROR',
                context={'backup_id': metadata.id, 'expected': metadata.checksum, 'actual': actual},
            )
            raise BackupIntegrityError(metadata.id, metadata.checksum, actual)

        return deserialize_backup_payload(serialized)

    def _drop_tables(self, conn: Connection, tables: List[str], drop_all: bool) -> List[str]:
        targets = sorted(set(self._eligible_tables(conn)) | set(tables)) if drop_all else list(tables)
        if drop_all:
            for view in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'view'")).scalars().all():
                conn.exec_driver_sql(f'DROP VIEW IF EXISTS {quote_identifier(conn, view)}')
        for table in targets:
            conn.exec_driver_sql(f'DROP TABLE IF EXISTS {quote_identifier(conn, table)}')
        return targets

    def _existing_objects(self, conn: Connection) -> set:
        return {(row.type, row.name) for row in conn.execute(text('SELECT type, name FROM sqlite_master')).all()}

    def _replay_schema(self, conn: Connection, schema: List[Dict[str, str]], types: Sequence[str], existing: set) -> None:
        for obj in schema:
            if obj['type'] in types and (obj['type'], obj['name']) not in existing:
                conn.exec_driver_sql(obj['sql'])

    def _insert_rows(self, conn: Connection, table: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        columns = list(rows[0].keys())
        column_list = ', '.join(quote_identifier(conn, column) for column in columns)
        binds = ', '.join(f':c{i}' for i in range(len(columns)))
        statement = text(f'INSERT OR REPLACE INTO {quote_identifier(conn, table)} ({column_list}) VALUES ({binds})')
        conn.execute(statement, [{f'c{i}': row.get(column) for i, column in enumerate(columns)} for row in rows])
        return len(rows)

    def _foreign_keys_enabled(self) -> bool:
        with self.engine.connect() as conn:
            return bool(conn.exec_driver_sql('PRAGMA foreign_keys').scalar())

    # ------------------------------------------------------------------
    # Scheduling and retention
    # ------------------------------------------------------------------

    def schedule_automatic_backup(self, now: Optional[datetime] = None) -> Optional[BackupMetadata]:
        """Take a backup if one is due.

        Called from the scheduler tick, so failures are logged and swallowed.

        Args:
            now: Current time, defaults to the clock

        Returns:
            Metadata of the backup taken, or None when nothing was done
        """
        if not self.config.enabled:
            logger.info('Automatic backups disabled; skipping')
            return None

        now = now or self._clock()
        try:
            last_backup = self.get_last_backup_time()
            if not self.should_create_backup(last_backup, now):
                logger.debug(f'No backup due (last backup {last_backup.isoformat()})')
                return None

            if last_backup is None or self.is_full_backup_time(last_backup, now):
                metadata = self.create_full_backup()
            else:
                metadata = self.create_incremental_backup(last_backup)
        except NothingToBackupError as e:
            logger.info(f'Scheduled incremental backup skipped: {e}')
            return None
        except Exception as e:
            logger.error(f'Scheduled backup failed: {e}', exc_info=True)
            return None

        try:
            pruned = self.cleanup_old_backups(now)
            if pruned:
                logger.info(f'Pruned {pruned} backups older than {self.config.retention_days} days')
        except Exception as e:
            logger.warning(f'Backup retention cleanup failed: {e}')

        return metadata

    def should_create_backup(self, last_backup: Optional[datetime], now: datetime) -> bool:
        """True when no backup exists or the configured cadence has elapsed."""
        if last_backup is None:
            return True
        return now - last_backup >= timedelta(hours=self.config.schedule.interval_hours)

    def is_full_backup_time(self, last_backup: Optional[datetime], now: datetime) -> bool:
        """True when a Sunday 00:00 boundary lies in ``(last_backup, now]``."""
        if last_backup is None:
            return True
        days_since_sunday = (now.weekday() + 1) % 7
        boundary = (now - timedelta(days=days_since_sunday)).replace(hour=0, minute=0, second=0, microsecond=0)
        return last_backup < boundary

    def cleanup_old_backups(self, now: Optional[datetime] = None) -> int:
        """Delete metadata (and stored payloads) older than the retention window.

        Returns:
            Number of backups pruned
        """
        cutoff = (now or self._clock()) - timedelta(days=self.config.retention_days)
        with session_scope(self.session_factory) as session:
            expired = session.query(BackupMetadataRecord).filter(BackupMetadataRecord.timestamp < cutoff).all()
            expired_ids = [record.id for record in expired]
            for record in expired:
                session.delete(record)

        for backup_id in expired_ids:
            self._delete_payload(backup_id)
        return len(expired_ids)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_last_backup_time(self) -> Optional[datetime]:
        with session_scope(self.session_factory) as session:
            return (
                session.query(func.max(BackupMetadataRecord.timestamp))
                .filter(BackupMetadataRecord.status == 'completed')
                .scalar()
            )

    def get_last_backup(self) -> Optional[BackupMetadata]:
        with session_scope(self.session_factory) as session:
            record = (
                session.query(BackupMetadataRecord)
                .filter(BackupMetadataRecord.status == 'completed')
                .order_by(BackupMetadataRecord.timestamp.desc())
                .first()
            )
            return BackupMetadata.from_record(record) if record else None

    def get_backup_metadata(self, backup_id: str) -> Optional[BackupMetadata]:
        with session_scope(self.session_factory) as session:
            record = session.get(BackupMetadataRecord, backup_id)
            return BackupMetadata.from_record(record) if record else None

    def list_backups(self, limit: int = 20) -> List[BackupMetadata]:
        with session_scope(self.session_factory) as session:
            records = (
                session.query(BackupMetadataRecord)
                .order_by(BackupMetadataRecord.timestamp.desc())
                .limit(limit)
                .all()
            )
            return [BackupMetadata.from_record(record) for record in records]
