"""Database operations orchestrator.

``DatabaseManager`` owns the QueryOptimizer and BackupManager for one store and
combines them into health evaluation, optimization, maintenance and recovery
routines. It is created once per process (the FastAPI lifespan or the
maintenance script) and passed to whoever needs it.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from dbops.lib import metrics
from dbops.lib.backup_storage import BackupStorage
from dbops.lib.config import SYSTEM_TABLES, DatabaseManagerConfig
from dbops.lib.database import get_session_factory, missing_tables, ping, session_scope, utcnow
from dbops.lib.distributed_tracing import correlation_scope
from dbops.lib.errors import RecoveryFailedError, StatisticsRefreshError
from dbops.lib.structured_logger import StructuredLogger, log_event
from dbops.models.backup import RestoreOptions
from dbops.models.optimization_suggestion import OptimizationSuggestionRecord
from dbops.models.performance_snapshot import PerformanceSnapshotRecord
from dbops.models.query_metrics import OptimizationSuggestion, SuggestionPriority, SuggestionType
from dbops.models.query_performance_log import QueryPerformanceLog
from dbops.models.system_health import (
    BackupHealth,
    BackupHealthStatus,
    DatabaseHealth,
    DatabaseStatus,
    HealthLevel,
    MaintenanceSummary,
    OptimizationSummary,
    PerformanceDashboard,
    PerformanceHealth,
    PerformanceSnapshot,
    Recommendation,
    RecoveryResult,
    SnapshotType,
    SystemHealthStatus,
)
from dbops.services.backup_service import BackupManager
from dbops.services.query_optimizer import QueryOptimizer, WindowStatistics

logger = StructuredLogger(__name__)

# Pragmas applied on initialize: WAL journaling, normal sync, 64 MB page cache
STORE_PRAGMAS = (
    ('journal_mode', 'WAL'),
    ('synchronous', 'NORMAL'),
    ('cache_size', '-64000'),
    ('foreign_keys', 'ON'),
    ('temp_store', 'MEMORY'),
)

SLOW_CONNECTION_MS = 1000.0
SLOW_AVERAGE_QUERY_MS = 2000.0
MAX_ERROR_RATE = 5.0
MIN_CACHE_HIT_RATE = 50.0
MIN_INDEX_EFFICIENCY = 70.0
BACKUP_GRACE_HOURS = 1
QUICK_CHECK_BUDGET_MS = 1000.0
SLOW_REPORT_DAYS = 7
TREND_HOURS = 24
RECOMMENDATION_LIMIT = 10

SNAPSHOT_WINDOWS = {
    SnapshotType.HOURLY: timedelta(hours=1),
    SnapshotType.DAILY: timedelta(days=1),
}

INDEX_NAME_PATTERN = re.compile(r'CREATE\s+INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?"?(\w+)"?', re.IGNORECASE)


def quick_health_check(engine: Engine) -> bool:
    """True when a trivial statement round-trips within one second.

    Never raises; an unreachable store is reported as False.
    """
    try:
        return ping(engine) < QUICK_CHECK_BUDGET_MS
    except Exception as e:
        logger.warning(f'Quick health check failed: {e}')
        return False


class DatabaseManager:
    """Orchestrates health, optimization, maintenance and recovery."""

    def __init__(
        self,
        engine: Engine,
        config: Optional[DatabaseManagerConfig] = None,
        storage: Optional[BackupStorage] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the manager and its collaborators.

        Args:
            engine: Engine over the single store connection
            config: Settings for all three components
            storage: Backup payload storage; defaults to the configured directory
            clock: Returns the current naive UTC time
        """
        self.engine = engine
        self.config = config or DatabaseManagerConfig()
        self.session_factory = get_session_factory(engine)
        self._clock = clock
        self.query_optimizer = QueryOptimizer(
            engine, self.session_factory, config=self.config.query_optimizer, clock=clock
        )
        self.backup_manager = BackupManager(
            engine, self.session_factory, config=self.config.backup, storage=storage, clock=clock
        )
        self._last_auto_optimization: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self) -> List[str]:
        """Check the system tables, apply pragmas and ensure a first backup.

        Missing tables are reported, not created; run the migrations for that.

        Returns:
            Names of the system tables that are missing
        """
        with self.engine.connect() as conn:
            missing = missing_tables(conn, SYSTEM_TABLES)
        if missing:
            logger.warning(
                f'System tables missing, run "alembic upgrade head": {", ".join(missing)}',
                missing_tables=missing,
            )

        self._apply_pragmas()

        if not missing and self.config.backup.enabled and self.backup_manager.get_last_backup_time() is None:
            logger.info('No backup found; creating initial full backup')
            try:
                self.backup_manager.create_full_backup()
            except Exception as e:
                logger.error(f'Initial backup failed: {e}', exc_info=True)

        log_event('database_manager.initialized', context={'missing_tables': len(missing)})
        return missing

    def _apply_pragmas(self) -> None:
        for name, value in STORE_PRAGMAS:
            try:
                with self.engine.connect() as conn:
                    conn.exec_driver_sql(f'PRAGMA {name} = {value}')
            except SQLAlchemyError as e:
                logger.warning(f'Could not apply PRAGMA {name}={value}: {e}', pragma=name)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_system_health(self) -> SystemHealthStatus:
        """Evaluate database, backup and performance health.

        Any failure of the evaluation itself yields a critical status.
        """
        now = self._clock()
        try:
            stats = self.query_optimizer.window_statistics(
                now - timedelta(hours=1), now, include_index_efficiency=True
            )
            database = self._check_database_health(stats)
            backup = self._check_backup_health(now)
            performance = self._check_performance_health(stats)
            status = SystemHealthStatus(
                overall=self.evaluate_overall_health(database, backup, performance),
                database=database,
                backup=backup,
                performance=performance,
                checked_at=now,
            )
        except Exception as e:
            logger.error(f'Health check failed: {e}', exc_info=True)
            status = SystemHealthStatus.critical(now)

        metrics.record_health_status(status.overall.value)
        if status.overall != HealthLevel.HEALTHY:
            log_event(
                'health.degraded',
                level='WARNING' if status.overall == HealthLevel.WARNING else 'ERROR',
                context={
                    'overall': status.overall.value,
                    'database': status.database.status.value,
                    'backup': status.backup.status.value,
                },
            )
        return status

    def _check_database_health(self, stats: WindowStatistics) -> DatabaseHealth:
        try:
            connection_ms = ping(self.engine)
        except Exception as e:
            logger.error(f'Database connectivity probe failed: {e}')
            return DatabaseHealth(status=DatabaseStatus.ERROR, error_rate=100.0)

        error_rate = stats.error_rate()
        if error_rate > MAX_ERROR_RATE:
            status = DatabaseStatus.ERROR
        elif connection_ms > SLOW_CONNECTION_MS or stats.avg_query_time > SLOW_AVERAGE_QUERY_MS:
            status = DatabaseStatus.SLOW
        else:
            status = DatabaseStatus.CONNECTED

        return DatabaseHealth(
            status=status,
            avg_query_time=stats.avg_query_time,
            slow_queries=stats.slow_queries,
            error_rate=error_rate,
            connection_time_ms=round(connection_ms, 2),
        )

    def _check_backup_health(self, now: datetime) -> BackupHealth:
        try:
            last_backup = self.backup_manager.get_last_backup()
        except Exception as e:
            logger.error(f'Backup health check failed: {e}')
            return BackupHealth(status=BackupHealthStatus.FAILED)

        if last_backup is None:
            return BackupHealth(status=BackupHealthStatus.OVERDUE)

        cadence = timedelta(hours=self.config.backup.schedule.interval_hours)
        overdue = now - last_backup.timestamp > cadence + timedelta(hours=BACKUP_GRACE_HOURS)
        return BackupHealth(
            status=BackupHealthStatus.OVERDUE if overdue else BackupHealthStatus.CURRENT,
            last_backup_time=last_backup.timestamp,
            next_backup_time=last_backup.timestamp + cadence,
            backup_size=last_backup.size_bytes,
        )

    def _check_performance_health(self, stats: WindowStatistics) -> PerformanceHealth:
        suggestions = OptimizationSuggestionRecord
        with session_scope(self.session_factory) as session:
            pending = session.query(suggestions).filter(suggestions.status == 'pending').count()
            applied = session.query(suggestions).filter(suggestions.status == 'applied').count()

        return PerformanceHealth(
            cache_hit_rate=stats.cache_hit_rate(when_idle=100.0),
            index_efficiency=stats.index_efficiency(when_idle=100.0),
            pending_optimizations=pending,
            applied_optimizations=applied,
        )

    def evaluate_overall_health(
        self, database: DatabaseHealth, backup: BackupHealth, performance: PerformanceHealth
    ) -> HealthLevel:
        """Combine sub-checks: critical beats warning beats healthy."""
        if database.status == DatabaseStatus.ERROR or backup.status == BackupHealthStatus.FAILED:
            return HealthLevel.CRITICAL
        if (
            database.status == DatabaseStatus.SLOW
            or backup.status == BackupHealthStatus.OVERDUE
            or performance.cache_hit_rate < MIN_CACHE_HIT_RATE
            or performance.index_efficiency < MIN_INDEX_EFFICIENCY
        ):
            return HealthLevel.WARNING
        return HealthLevel.HEALTHY

    def quick_health_check(self) -> bool:
        return quick_health_check(self.engine)

    # ------------------------------------------------------------------
    # Optimization and maintenance
    # ------------------------------------------------------------------

    def perform_comprehensive_optimization(self) -> OptimizationSummary:
        """Apply auto-indexes, refresh statistics, back up and record suggestions.

        Each index statement is applied on its own; one failure does not stop
        the rest. A failed statistics refresh or backup is reported in the
        summary rather than raised.

        Returns:
            OptimizationSummary of what was done
        """
        with correlation_scope():
            logger.info('Starting comprehensive optimization')
            indexes_created = []
            for statement in self.query_optimizer.suggest_auto_indexes():
                try:
                    with self.engine.begin() as conn:
                        conn.exec_driver_sql(statement)
                    indexes_created.append(statement)
                    logger.info(f'Applied index: {statement}')
                except SQLAlchemyError as e:
                    logger.warning(f'Could not apply index statement {statement}: {e}')

            try:
                self.query_optimizer.update_database_statistics()
                statistics_updated = True
            except StatisticsRefreshError as e:
                logger.warning(f'Statistics refresh failed: {e}')
                statistics_updated = False

            backup = self.backup_manager.schedule_automatic_backup()

            suggested = 0
            persisted = 0
            for report in self.query_optimizer.generate_slow_query_report(days=SLOW_REPORT_DAYS):
                suggested += len(report.suggestions)
                for suggestion in report.suggestions:
                    if suggestion.priority == SuggestionPriority.HIGH:
                        persisted += self._persist_suggestion(report.query, suggestion)

            self._mark_applied_suggestions()

            summary = OptimizationSummary(
                indexes_created=indexes_created,
                statistics_updated=statistics_updated,
                backup_completed=backup is not None,
                backup_id=backup.id if backup else None,
                optimizations_suggested=suggested,
            )
            log_event(
                'optimization.completed',
                context={
                    'indexes_created': len(indexes_created),
                    'statistics_updated': statistics_updated,
                    'backup_completed': summary.backup_completed,
                    'suggestions': suggested,
                    'suggestions_persisted': persisted,
                },
            )
            return summary

    def _persist_suggestion(self, query: str, suggestion: OptimizationSuggestion) -> int:
        records = OptimizationSuggestionRecord
        if suggestion.suggested_sql is None:
            same_sql = records.suggested_sql.is_(None)
        else:
            same_sql = records.suggested_sql == suggestion.suggested_sql

        with session_scope(self.session_factory) as session:
            duplicate = (
                session.query(records.id)
                .filter(
                    records.status == 'pending',
                    records.suggestion_type == suggestion.type.value,
                    records.target_query_pattern == query,
                    same_sql,
                )
                .first()
            )
            if duplicate:
                return 0
            session.add(
                records(
                    suggestion_type=suggestion.type.value,
                    priority=suggestion.priority.value,
                    target_query_pattern=query,
                    suggestion_title=f'{suggestion.type.value.capitalize()} optimization',
                    suggestion_description=suggestion.message,
                    suggested_sql=suggestion.suggested_sql,
                    status='pending',
                    created_at=self._clock(),
                )
            )
        return 1

    def _mark_applied_suggestions(self) -> None:
        with self.engine.connect() as conn:
            existing = set(
                conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'index'")).scalars().all()
            )

        records = OptimizationSuggestionRecord
        with session_scope(self.session_factory) as session:
            pending = (
                session.query(records)
                .filter(records.status == 'pending', records.suggestion_type == SuggestionType.INDEX.value)
                .all()
            )
            for record in pending:
                match = INDEX_NAME_PATTERN.search(record.suggested_sql or '')
                if match and match.group(1) in existing:
                    record.status = 'applied'
                    record.applied_at = self._clock()

    def perform_routine_maintenance(self) -> MaintenanceSummary:
        """Prune the query log, report unused indexes, check integrity, snapshot.

        Returns:
            MaintenanceSummary of what was found and done
        """
        with correlation_scope():
            now = self._clock()
            cutoff = now - timedelta(days=self.config.monitoring.log_retention_days)
            with session_scope(self.session_factory) as session:
                logs_pruned = (
                    session.query(QueryPerformanceLog)
                    .filter(QueryPerformanceLog.timestamp < cutoff)
                    .delete(synchronize_session=False)
                )
            logger.info(f'Pruned {logs_pruned} query log rows older than {cutoff.isoformat()}')

            unused = [
                usage.index_name for usage in self.query_optimizer.analyze_index_usage() if usage.unused
            ]
            if unused:
                logger.info(f'Unused indexes (not removed): {", ".join(unused)}', unused_indexes=unused)

            with self.engine.connect() as conn:
                messages = [str(row[0]) for row in conn.exec_driver_sql('PRAGMA integrity_check').all()]
            integrity_ok = messages == ['ok']
            if not integrity_ok:
                logger.error('Integrity check failed', integrity_messages=messages)
                log_event('maintenance.integrity_failed', level='ERROR', context={'messages': messages[:10]})

            snapshot = self.create_performance_snapshot(SnapshotType.DAILY)

            summary = MaintenanceSummary(
                logs_pruned=logs_pruned,
                unused_indexes=unused,
                integrity_ok=integrity_ok,
                integrity_messages=[] if integrity_ok else messages,
                snapshot_id=snapshot.id,
            )
            log_event(
                'maintenance.completed',
                context={
                    'logs_pruned': logs_pruned,
                    'unused_indexes': len(unused),
                    'integrity_ok': integrity_ok,
                },
            )
            return summary

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def emergency_recovery(self, backup_id: str) -> RecoveryResult:
        """Back up the current state, restore a backup and re-check health.

        Args:
            backup_id: Backup to restore (with drop_existing)

        Returns:
            RecoveryResult with the emergency backup id and post-restore health

        Raises:
            RecoveryFailedError: If health is critical after the restore
            BackupError: If the emergency backup or the restore fails
        """
        with correlation_scope():
            logger.warning(f'Emergency recovery from {backup_id} requested', backup_id=backup_id)
            emergency = self.backup_manager.create_full_backup()
            logger.info(f'Pre-recovery state saved as {emergency.id}', emergency_backup_id=emergency.id)

            restore = self.backup_manager.restore_from_backup(backup_id, RestoreOptions(drop_existing=True))
            health = self.get_system_health()

            log_event(
                'recovery.completed',
                level='ERROR' if health.overall == HealthLevel.CRITICAL else 'WARNING',
                context={
                    'backup_id': backup_id,
                    'emergency_backup_id': emergency.id,
                    'records_restored': restore.records_restored,
                    'health': health.overall.value,
                },
            )
            if health.overall == HealthLevel.CRITICAL:
                raise RecoveryFailedError(backup_id, emergency.id)

            return RecoveryResult(
                backup_id=backup_id,
                emergency_backup_id=emergency.id,
                restore=restore,
                health=health,
            )

    # ------------------------------------------------------------------
    # Snapshots, dashboard and the scheduler tick
    # ------------------------------------------------------------------

    def create_performance_snapshot(self, snapshot_type: SnapshotType = SnapshotType.HOURLY) -> PerformanceSnapshot:
        """Summarize the query log over the last hour (hourly) or day (daily)."""
        period_end = self._clock()
        period_start = period_end - SNAPSHOT_WINDOWS[snapshot_type]
        stats = self.query_optimizer.window_statistics(period_start, period_end)

        with session_scope(self.session_factory) as session:
            record = PerformanceSnapshotRecord(
                snapshot_type=snapshot_type.value,
                total_queries=stats.total_queries,
                avg_query_time=stats.avg_query_time,
                slow_queries=stats.slow_queries,
                failed_queries=stats.failed_queries,
                cache_hit_rate=stats.cache_hit_rate(),
                period_start=period_start,
                period_end=period_end,
                created_at=period_end,
            )
            session.add(record)
            session.flush()
            snapshot = PerformanceSnapshot.from_record(record)

        logger.debug(f'Created {snapshot_type.value} snapshot {snapshot.id}')
        return snapshot

    def get_performance_dashboard(self) -> PerformanceDashboard:
        """Current figures, the last day of hourly snapshots and pending recommendations."""
        current = self.query_optimizer.get_performance_dashboard_data()
        since = self._clock() - timedelta(hours=TREND_HOURS)

        snapshots = PerformanceSnapshotRecord
        suggestions = OptimizationSuggestionRecord
        with session_scope(self.session_factory) as session:
            trend_records = (
                session.query(snapshots)
                .filter(snapshots.snapshot_type == SnapshotType.HOURLY.value, snapshots.created_at >= since)
                .order_by(snapshots.created_at.asc())
                .all()
            )
            trends = [PerformanceSnapshot.from_record(record) for record in trend_records]
            recommendations = [
                Recommendation(
                    id=record.id,
                    suggestion_type=record.suggestion_type,
                    priority=record.priority,
                    title=record.suggestion_title,
                    description=record.suggestion_description,
                    suggested_sql=record.suggested_sql,
                    created_at=record.created_at,
                )
                for record in session.query(suggestions)
                .filter(suggestions.status == 'pending')
                .order_by(suggestions.created_at.desc())
                .limit(RECOMMENDATION_LIMIT)
                .all()
            ]

        return PerformanceDashboard(current=current, trends=trends, recommendations=recommendations)

    def _latest_snapshot_time(self, snapshot_type: SnapshotType) -> Optional[datetime]:
        snapshots = PerformanceSnapshotRecord
        with session_scope(self.session_factory) as session:
            latest = (
                session.query(snapshots.created_at)
                .filter(snapshots.snapshot_type == snapshot_type.value)
                .order_by(snapshots.created_at.desc())
                .first()
            )
            return latest[0] if latest else None

    def tick(self, now: Optional[datetime] = None) -> None:
        """One pass of the cooperative scheduler.

        Call periodically (cron, the maintenance script). Each step is
        independent and its failures are logged; nothing is raised.

        Args:
            now: Current time, defaults to the clock
        """
        now = now or self._clock()
        monitoring = self.config.monitoring

        if monitoring.enable_real_time_stats:
            try:
                latest = self._latest_snapshot_time(SnapshotType.HOURLY)
                interval = timedelta(minutes=monitoring.performance_snapshot_interval_minutes)
                if latest is None or now - latest >= interval:
                    self.create_performance_snapshot(SnapshotType.HOURLY)
            except Exception as e:
                logger.error(f'Hourly snapshot failed: {e}', exc_info=True)

        self.backup_manager.schedule_automatic_backup(now)

        if monitoring.auto_optimization and (
            self._last_auto_optimization is None or now - self._last_auto_optimization >= timedelta(days=1)
        ):
            try:
                self.perform_comprehensive_optimization()
                self._last_auto_optimization = now
            except Exception as e:
                logger.error(f'Automatic optimization failed: {e}', exc_info=True)
