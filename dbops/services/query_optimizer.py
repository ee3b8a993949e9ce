"""Query instrumentation and optimization suggestions.

``QueryOptimizer`` wraps statement execution with timing and row counts,
persists one ``query_performance_log`` row per execution, flags slow
statements and mines the log for index suggestions.

Metric persistence is a best-effort side effect: it runs inline after the
statement (the store has a single connection, so there is nothing to run it
concurrently with) and its failures are logged and counted, never raised.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from sqlalchemy import Connection, Engine, TextClause, case, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dbops.lib import metrics
from dbops.lib.config import SYSTEM_TABLES, QueryOptimizerConfig
from dbops.lib.database import (
    index_definitions,
    list_user_tables,
    primary_key_columns,
    quote_identifier,
    session_scope,
    table_columns,
    utcnow,
)
from dbops.lib.errors import StatisticsRefreshError
from dbops.lib.sql_analysis import QueryAnalyzer, QueryPattern, RegexQueryAnalyzer, normalize_sql
from dbops.lib.structured_logger import log_event
from dbops.models.query_metrics import (
    ExecutionResult,
    IndexUsage,
    OptimizationSuggestion,
    PerformanceDashboardData,
    QueryPerformanceMetric,
    SlowQueryReport,
    SlowQuerySummary,
    SuggestionPriority,
    SuggestionType,
    TableStatistics,
)
from dbops.models.query_performance_log import QueryPerformanceLog
from dbops.models.table_statistics import TableStatisticsRecord

logger = logging.getLogger(__name__)

PLAN_INDEX_PATTERN = re.compile(r'USING (?:COVERING )?INDEX (\w+)', re.IGNORECASE)
SELECT_STAR_PATTERN = re.compile(r'\bselect\s+(distinct\s+)?\*', re.IGNORECASE)
EXPLAINABLE_QUERY_TYPES = ('select', 'with', 'insert', 'replace', 'update', 'delete')

LARGE_RESULT_ROWS = 1000
SLOW_REPORT_LIMIT = 20
AUTO_INDEX_WINDOW_DAYS = 30
AUTO_INDEX_WHERE_MIN_OCCURRENCES = 10
AUTO_INDEX_WHERE_MIN_AVG_MS = 100.0
AUTO_INDEX_JOIN_MIN_OCCURRENCES = 5
AUTO_INDEX_JOIN_MIN_AVG_MS = 200.0
DASHBOARD_TOP_SLOW = 5
DASHBOARD_SQL_PREVIEW = 100
STATISTICS_SAMPLE_ROWS = 1000

Statement = Union[str, TextClause]


def sql_digest(sql: str) -> str:
    """SHA-256 hex of the normalized SQL text."""
    return hashlib.sha256(normalize_sql(sql).encode('utf-8')).hexdigest()


def generate_query_id(sql: str) -> str:
    return sql_digest(sql)[:16]


def estimate_rows_scanned(rows_returned: int, has_where: bool) -> int:
    """Rough scan estimate; no cardinality data is available from the engine."""
    return rows_returned * (2 if has_where else 10)


def calculate_index_effectiveness(usage_count: int, avg_execution_time: float) -> float:
    """Score an index from 0 to 100.

    Half the score rewards usage (saturating at 100 uses), the other half
    rewards fast queries (dropping to zero at 5 seconds average).

    Args:
        usage_count: Executions whose plan used the index
        avg_execution_time: Average time of those executions in milliseconds

    Returns:
        Effectiveness score clamped to [0, 100]
    """
    score = min(usage_count / 100 * 50, 50) + max(50 - avg_execution_time / 100, 0)
    return round(max(0.0, min(100.0, score)), 2)


@dataclass(frozen=True)
class WindowStatistics:
    """Query log figures for one time window.

    ``total_queries`` counts every logged row (cache hits and failures
    included); timing figures only cover executed, successful statements.
    """

    total_queries: int = 0
    cache_hits: int = 0
    failed_queries: int = 0
    avg_query_time: float = 0.0
    slow_queries: int = 0
    filtered_queries: int = 0
    indexed_filtered_queries: int = 0

    def cache_hit_rate(self, when_idle: float = 0.0) -> float:
        if not self.total_queries:
            return when_idle
        return round(self.cache_hits / self.total_queries * 100, 2)

    def error_rate(self) -> float:
        if not self.total_queries:
            return 0.0
        return round(self.failed_queries / self.total_queries * 100, 2)

    def index_efficiency(self, when_idle: float = 100.0) -> float:
        if not self.filtered_queries:
            return when_idle
        return round(self.indexed_filtered_queries / self.filtered_queries * 100, 2)


class QueryOptimizer:
    """Instrumented execution and heuristic optimization over one store.

    The metric cache is owned by the instance; there is no module-level state.
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: sessionmaker,
        config: Optional[QueryOptimizerConfig] = None,
        analyzer: Optional[QueryAnalyzer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the optimizer.

        Args:
            engine: Engine over the single store connection
            session_factory: Session factory bound to the same engine
            config: Thresholds and cache settings
            analyzer: SQL analyzer; defaults to the regex heuristic
            clock: Returns the current naive UTC time
        """
        self.engine = engine
        self.session_factory = session_factory
        self.config = config or QueryOptimizerConfig()
        self.analyzer = analyzer or RegexQueryAnalyzer()
        self._clock = clock
        self._cache: Dict[str, QueryPerformanceMetric] = {}

    # ------------------------------------------------------------------
    # Instrumented execution
    # ------------------------------------------------------------------

    def execute_with_metrics(
        self,
        statement: Statement,
        params: Optional[Mapping[str, Any]] = None,
        *,
        query_id: Optional[str] = None,
        cache_key: Optional[str] = None,
    ) -> ExecutionResult:
        """Execute a statement and record how it performed.

        With a ``cache_key`` whose metric is younger than the cache TTL the
        statement is NOT executed: the cached metric is returned tagged
        ``cache_hit=True`` with ``rows=None``. This caches metrics, not
        results; re-issue the statement without a cache key for fresh rows.

        Args:
            statement: SQL text or ``sqlalchemy.text()`` clause
            params: Bind parameters
            query_id: Identifier to record instead of the SQL digest
            cache_key: Key for the metric cache

        Returns:
            ExecutionResult with the fetched rows and the metric

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the statement itself fails
        """
        clause = statement if isinstance(statement, TextClause) else text(statement)
        sql = clause.text
        pattern = self.analyzer.analyze(sql)
        query_id = query_id or generate_query_id(sql)

        if cache_key is not None:
            cached = self._get_cached_metric(cache_key)
            metrics.record_cache_lookup(hit=cached is not None)
            if cached is not None:
                metric = cached.model_copy(update={'cache_hit': True})
                self._record_metric(metric, pattern)
                logger.debug(f'Metric cache hit for {cache_key} [{metric.query_id}]')
                return ExecutionResult(rows=None, rowcount=metric.rows_returned, metric=metric)

        start = time.perf_counter()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(clause, dict(params or {}))
                if result.returns_rows:
                    rows = result.all()
                    rowcount = len(rows)
                else:
                    rows = []
                    rowcount = max(result.rowcount, 0)
                execution_time = (time.perf_counter() - start) * 1000
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(f'Query execution failed after {elapsed:.2f}ms [{query_id}]: {e}')
            metrics.record_query_failure(pattern.query_type or 'unknown', type(e).__name__)
            self._record_failure(query_id, sql, elapsed, pattern, e)
            raise

        metric = QueryPerformanceMetric(
            query_id=query_id,
            sql=sql,
            execution_time=round(execution_time, 3),
            rows_returned=rowcount,
            rows_scanned=estimate_rows_scanned(rowcount, pattern.has_where),
            indexes_used=self.get_indexes_used(clause, params, pattern),
            cache_hit=False,
            timestamp=self._clock(),
        )
        self._record_metric(metric, pattern)

        slow = metric.execution_time > self.config.slow_query_threshold_ms
        metrics.record_query(pattern.query_type or 'unknown', metric.execution_time, slow)
        if slow:
            self._handle_slow_query(metric)

        if cache_key is not None:
            self._cache[cache_key] = metric

        return ExecutionResult(rows=rows, rowcount=rowcount, metric=metric)

    def get_indexes_used(
        self,
        statement: Statement,
        params: Optional[Mapping[str, Any]] = None,
        pattern: Optional[QueryPattern] = None,
    ) -> List[str]:
        """Index names from ``EXPLAIN QUERY PLAN``, in plan order.

        Introspection failures yield an empty list.
        """
        sql = statement.text if isinstance(statement, TextClause) else statement
        pattern = pattern or self.analyzer.analyze(sql)
        if pattern.query_type not in EXPLAINABLE_QUERY_TYPES:
            return []

        try:
            with self.engine.connect() as conn:
                plan = conn.execute(text(f'EXPLAIN QUERY PLAN {sql}'), dict(params or {})).all()
        except Exception as e:
            logger.debug(f'Query plan introspection failed: {e}')
            return []

        indexes: List[str] = []
        for step in plan:
            for name in PLAN_INDEX_PATTERN.findall(str(step[-1])):
                if name not in indexes:
                    indexes.append(name)
        return indexes

    def clear_cache(self) -> None:
        self._cache.clear()

    def _get_cached_metric(self, cache_key: str) -> Optional[QueryPerformanceMetric]:
        cached = self._cache.get(cache_key)
        if cached is None:
            return None
        if self._clock() - cached.timestamp < timedelta(seconds=self.config.cache_ttl_seconds):
            return cached
        # Expired, evict lazily
        del self._cache[cache_key]
        return None

    def _record_metric(self, metric: QueryPerformanceMetric, pattern: QueryPattern) -> None:
        self._persist_log_row(
            QueryPerformanceLog(
                query_id=metric.query_id,
                sql_hash=sql_digest(metric.sql),
                sql=metric.sql,
                execution_time=metric.execution_time,
                rows_returned=metric.rows_returned,
                rows_scanned=metric.rows_scanned,
                indexes_used=json.dumps(metric.indexes_used),
                cache_hit=metric.cache_hit,
                query_type=pattern.query_type or None,
                query_pattern=json.dumps(pattern.to_dict()),
                timestamp=self._clock() if metric.cache_hit else metric.timestamp,
            )
        )

    def _record_failure(self, query_id: str, sql: str, elapsed: float, pattern: QueryPattern, error: Exception) -> None:
        self._persist_log_row(
            QueryPerformanceLog(
                query_id=query_id,
                sql_hash=sql_digest(sql),
                sql=sql,
                execution_time=round(elapsed, 3),
                rows_returned=0,
                rows_scanned=0,
                indexes_used='[]',
                cache_hit=False,
                query_type=pattern.query_type or None,
                query_pattern=json.dumps(pattern.to_dict()),
                error_type=type(error).__name__,
                timestamp=self._clock(),
            )
        )

    def _persist_log_row(self, row: QueryPerformanceLog) -> None:
        """Best-effort write of one log row; never raises."""
        if not self.config.enable_logging:
            return
        try:
            with session_scope(self.session_factory) as session:
                session.add(row)
        except Exception as e:
            metrics.record_metric_log_failure()
            logger.warning(f'Failed to record query metric [{row.query_id}]: {e}')

    def _handle_slow_query(self, metric: QueryPerformanceMetric) -> None:
        """Log a slow execution with suggestions. Never raises."""
        try:
            suggestions = self.analyze_and_optimize_query(metric.sql)
            logger.warning(
                f'Slow query detected: {metric.execution_time:.2f}ms '
                f'(threshold {self.config.slow_query_threshold_ms:.0f}ms) [{metric.query_id}]'
            )
            log_event(
                'query.slow',
                level='WARNING',
                context={
                    'query_id': metric.query_id,
                    'execution_time_ms': metric.execution_time,
                    'rows_returned': metric.rows_returned,
                    'sql': metric.sql[:200],
                    'suggestions': [s.message for s in suggestions[:3]],
                },
            )
        except Exception as e:
            logger.warning(f'Slow query analysis failed [{metric.query_id}]: {e}')

    # ------------------------------------------------------------------
    # Static analysis
    # ------------------------------------------------------------------

    def analyze_and_optimize_query(self, sql: str) -> List[OptimizationSuggestion]:
        """Suggest optimizations for one statement.

        Suggestions are advisory; the caller's SQL is never changed.

        Args:
            sql: Statement text

        Returns:
            Suggestions in rule order: SELECT *, indexes, ordering, LIMIT,
            IN-subquery
        """
        pattern = self.analyzer.analyze(sql)
        suggestions: List[OptimizationSuggestion] = []

        if pattern.selects_all:
            suggestions.append(
                OptimizationSuggestion(
                    type=SuggestionType.REWRITE,
                    priority=SuggestionPriority.MEDIUM,
                    message='Avoid SELECT *; select only the columns you need',
                    suggested_sql=SELECT_STAR_PATTERN.sub(
                        lambda m: f'SELECT {m.group(1) or ""}column1, column2, ...', sql, count=1
                    ),
                )
            )

        estimated_rows = 0
        try:
            with self.engine.connect() as conn:
                suggestions.extend(self._index_suggestions(conn, pattern))
                if pattern.query_type == 'select' and not pattern.has_limit:
                    estimated_rows = self._estimate_result_rows(conn, pattern)
        except SQLAlchemyError as e:
            logger.warning(f'Index introspection failed during query analysis: {e}')

        if estimated_rows > LARGE_RESULT_ROWS:
            suggestions.append(
                OptimizationSuggestion(
                    type=SuggestionType.REWRITE,
                    priority=SuggestionPriority.MEDIUM,
                    message=f'Query may return about {estimated_rows} rows; add a LIMIT clause',
                    suggested_sql=f'{sql.strip().rstrip(";").rstrip()} LIMIT 100',
                )
            )

        if pattern.has_in_subquery:
            suggestions.append(
                OptimizationSuggestion(
                    type=SuggestionType.REWRITE,
                    priority=SuggestionPriority.MEDIUM,
                    message='Rewrite IN (SELECT ...) as a JOIN',
                )
            )

        return suggestions

    def _index_suggestions(self, conn: Connection, pattern: QueryPattern) -> List[OptimizationSuggestion]:
        suggestions: List[OptimizationSuggestion] = []
        seen = set()
        coverage = _IndexCoverage(conn)

        for ref in (*pattern.where_columns, *pattern.join_columns):
            name = f'idx_{ref.table}_{ref.column}'
            if name in seen or coverage.covers(ref.table, [ref.column]):
                continue
            seen.add(name)
            clause = 'WHERE' if ref in pattern.where_columns else 'JOIN'
            suggestions.append(
                OptimizationSuggestion(
                    type=SuggestionType.INDEX,
                    priority=SuggestionPriority.HIGH,
                    message=f'Add an index on {ref.table}.{ref.column} used in a {clause} condition',
                    suggested_sql=f'CREATE INDEX {name} ON {ref.table}({ref.column})',
                    suggested_index=name,
                )
            )

        order_by = pattern.order_by_columns
        if order_by and len({ref.table for ref in order_by}) == 1:
            table = order_by[0].table
            columns = [ref.column for ref in order_by]
            name = f'idx_{table}_{"_".join(columns)}'
            if name not in seen and not coverage.covers(table, columns):
                suggestions.append(
                    OptimizationSuggestion(
                        type=SuggestionType.INDEX,
                        priority=SuggestionPriority.MEDIUM,
                        message=f'Add a composite index on {table}({", ".join(columns)}) to serve ORDER BY',
                        suggested_sql=f'CREATE INDEX {name} ON {table}({", ".join(columns)})',
                        suggested_index=name,
                    )
                )

        return suggestions

    def _estimate_result_rows(self, conn: Connection, pattern: QueryPattern) -> int:
        table = pattern.main_table
        if not table:
            return 0
        try:
            row_count = conn.execute(
                text('SELECT row_count FROM table_statistics WHERE table_name = :table_name'),
                {'table_name': table},
            ).scalar()
            if row_count is None:
                row_count = conn.execute(text(f'SELECT COUNT(*) FROM {quote_identifier(conn, table)}')).scalar()
        except SQLAlchemyError:
            return 0
        row_count = row_count or 0
        return row_count // 10 if pattern.has_where else row_count

    # ------------------------------------------------------------------
    # Reports over the query log
    # ------------------------------------------------------------------

    def generate_slow_query_report(self, days: int = 7) -> List[SlowQueryReport]:
        """Slowest query digests over the trailing window.

        Only executions slower than the threshold are grouped, so a query that is
        usually fast still shows up with its slow runs. Cache hits and failed
        executions are ignored.

        Args:
            days: Window length in days

        Returns:
            Up to 20 reports, slowest average first, ties by frequency
        """
        since = self._clock() - timedelta(days=days)
        log = QueryPerformanceLog
        avg_time = func.avg(log.execution_time)
        execution_count = func.count(log.id)

        with session_scope(self.session_factory) as session:
            rows = (
                session.query(
                    log.sql_hash,
                    func.min(log.sql).label('sql'),
                    avg_time.label('avg_execution_time'),
                    func.max(log.execution_time).label('max_execution_time'),
                    execution_count.label('total_executions'),
                    func.max(log.timestamp).label('last_executed'),
                )
                .filter(
                    log.timestamp >= since,
                    log.execution_time > self.config.slow_query_threshold_ms,
                    log.cache_hit.is_(False),
                    log.error_type.is_(None),
                )
                .group_by(log.sql_hash)
                .order_by(avg_time.desc(), execution_count.desc())
                .limit(SLOW_REPORT_LIMIT)
                .all()
            )

        return [
            SlowQueryReport(
                query=row.sql,
                sql_hash=row.sql_hash,
                avg_execution_time=round(float(row.avg_execution_time), 2),
                max_execution_time=round(float(row.max_execution_time), 2),
                total_executions=int(row.total_executions),
                last_executed=row.last_executed,
                suggestions=self.analyze_and_optimize_query(row.sql),
            )
            for row in rows
        ]

    def analyze_index_usage(self, days: int = 30) -> List[IndexUsage]:
        """Score every non-automatic index on the application tables.

        Usage is matched by index name inside the recorded ``indexes_used``
        lists. Unused indexes are flagged, never dropped.

        Args:
            days: Window length in days

        Returns:
            Usage entries sorted by effectiveness, best first
        """
        since = self._clock() - timedelta(days=days)
        log = QueryPerformanceLog

        with self.engine.connect() as conn:
            indexes = conn.execute(
                text(
                    "SELECT name, tbl_name FROM sqlite_master WHERE type = 'index' "
                    "AND name NOT LIKE 'sqlite_autoindex_%' ORDER BY name"
                )
            ).all()

        usage: List[IndexUsage] = []
        with session_scope(self.session_factory) as session:
            for index in indexes:
                if index.tbl_name in SYSTEM_TABLES:
                    continue
                row = (
                    session.query(
                        func.count(log.id).label('usage_count'),
                        func.max(log.timestamp).label('last_used'),
                        func.avg(log.execution_time).label('avg_time'),
                    )
                    .filter(
                        log.timestamp >= since,
                        log.cache_hit.is_(False),
                        log.error_type.is_(None),
                        log.indexes_used.contains(json.dumps(index.name), autoescape=True),
                    )
                    .one()
                )
                usage_count = int(row.usage_count or 0)
                avg_time = float(row.avg_time or 0.0)
                usage.append(
                    IndexUsage(
                        index_name=index.name,
                        table_name=index.tbl_name,
                        usage_count=usage_count,
                        last_used=row.last_used,
                        avg_execution_time=round(avg_time, 2),
                        effectiveness=calculate_index_effectiveness(usage_count, avg_time),
                        unused=usage_count == 0,
                    )
                )

        usage.sort(key=lambda u: u.effectiveness, reverse=True)
        return usage

    def suggest_auto_indexes(self) -> List[str]:
        """Index DDL mined from 30 days of recorded access patterns.

        Where-column combinations qualify with at least 10 executions
        averaging over 100 ms; join columns with at least 5 executions
        averaging over 200 ms. Combinations already covered by an index are
        skipped.

        Returns:
            Idempotent ``CREATE INDEX IF NOT EXISTS`` statements
        """
        since = self._clock() - timedelta(days=AUTO_INDEX_WINDOW_DAYS)
        log = QueryPerformanceLog

        with session_scope(self.session_factory) as session:
            rows = (
                session.query(log.query_pattern, log.execution_time)
                .filter(
                    log.timestamp >= since,
                    log.query_pattern.isnot(None),
                    log.cache_hit.is_(False),
                    log.error_type.is_(None),
                )
                .all()
            )

        where_groups: Dict[Tuple[str, Tuple[str, ...]], List[float]] = {}
        join_groups: Dict[Tuple[str, str], List[float]] = {}
        for row in rows:
            try:
                pattern = json.loads(row.query_pattern)
                where_by_table: Dict[str, List[str]] = {}
                for ref in pattern.get('where_columns', []):
                    where_by_table.setdefault(ref['table'], []).append(ref['column'])
                join_refs = [(ref['table'], ref['column']) for ref in pattern.get('join_columns', [])]
            except (ValueError, KeyError, TypeError, AttributeError):
                logger.debug('Skipping query log row with malformed access pattern')
                continue
            for table, columns in where_by_table.items():
                where_groups.setdefault((table, tuple(columns)), []).append(row.execution_time)
            for key in join_refs:
                join_groups.setdefault(key, []).append(row.execution_time)

        candidates: List[Tuple[str, List[str], str]] = []
        for (table, columns), times in sorted(where_groups.items(), key=lambda item: -len(item[1])):
            if len(times) >= AUTO_INDEX_WHERE_MIN_OCCURRENCES and sum(times) / len(times) > AUTO_INDEX_WHERE_MIN_AVG_MS:
                candidates.append((table, list(columns), f'idx_{table}_{"_".join(columns)}_auto'))
        for (table, column), times in sorted(join_groups.items(), key=lambda item: -len(item[1])):
            if len(times) >= AUTO_INDEX_JOIN_MIN_OCCURRENCES and sum(times) / len(times) > AUTO_INDEX_JOIN_MIN_AVG_MS:
                candidates.append((table, [column], f'idx_{table}_{column}_join_auto'))

        if not candidates:
            return []

        statements: List[str] = []
        with self.engine.connect() as conn:
            coverage = _IndexCoverage(conn)
            for table, columns, name in candidates:
                if coverage.covers(table, columns):
                    continue
                statement = f'CREATE INDEX IF NOT EXISTS {name} ON {table}({", ".join(columns)})'
                if statement not in statements:
                    statements.append(statement)

        logger.info(f'Suggested {len(statements)} automatic indexes from {len(rows)} logged executions')
        return statements

    def window_statistics(
        self,
        since: datetime,
        until: Optional[datetime] = None,
        include_index_efficiency: bool = False,
    ) -> WindowStatistics:
        """Aggregate the query log between two instants.

        Args:
            since: Window start (inclusive)
            until: Window end (inclusive), defaults to now
            include_index_efficiency: Also count filtered statements and how
                many of them used an index (reads each row's access pattern)

        Returns:
            WindowStatistics for the window
        """
        until = until or self._clock()
        log = QueryPerformanceLog
        in_window = (log.timestamp >= since, log.timestamp <= until)
        measured = (*in_window, log.cache_hit.is_(False), log.error_type.is_(None))
        threshold = self.config.slow_query_threshold_ms

        with session_scope(self.session_factory) as session:
            totals = session.query(
                func.count(log.id).label('total'),
                func.coalesce(func.sum(case((log.cache_hit.is_(True), 1), else_=0)), 0).label('cache_hits'),
                func.coalesce(func.sum(case((log.error_type.isnot(None), 1), else_=0)), 0).label('failed'),
            ).filter(*in_window).one()
            timing = session.query(
                func.avg(log.execution_time).label('avg_time'),
                func.coalesce(func.sum(case((log.execution_time > threshold, 1), else_=0)), 0).label('slow'),
            ).filter(*measured).one()

            filtered = indexed = 0
            if include_index_efficiency:
                patterns = session.query(log.query_pattern, log.indexes_used).filter(
                    *measured, log.query_pattern.isnot(None)
                )
                for pattern_json, indexes_json in patterns:
                    try:
                        where_columns = json.loads(pattern_json).get('where_columns')
                        used = json.loads(indexes_json or '[]')
                    except (ValueError, AttributeError):
                        continue
                    if where_columns:
                        filtered += 1
                        if used:
                            indexed += 1

        return WindowStatistics(
            total_queries=int(totals.total or 0),
            cache_hits=int(totals.cache_hits or 0),
            failed_queries=int(totals.failed or 0),
            avg_query_time=round(float(timing.avg_time or 0.0), 2),
            slow_queries=int(timing.slow or 0),
            filtered_queries=filtered,
            indexed_filtered_queries=indexed,
        )

    def get_performance_dashboard_data(self) -> PerformanceDashboardData:
        """Last-hour dashboard figures with the five slowest query digests."""
        now = self._clock()
        since = now - timedelta(hours=1)
        stats = self.window_statistics(since, now)

        log = QueryPerformanceLog
        avg_time = func.avg(log.execution_time)
        with session_scope(self.session_factory) as session:
            top = (
                session.query(
                    func.min(log.sql).label('sql'),
                    avg_time.label('avg_time'),
                    func.count(log.id).label('count'),
                )
                .filter(
                    log.timestamp >= since,
                    log.execution_time > self.config.slow_query_threshold_ms,
                    log.cache_hit.is_(False),
                    log.error_type.is_(None),
                )
                .group_by(log.sql_hash)
                .order_by(avg_time.desc())
                .limit(DASHBOARD_TOP_SLOW)
                .all()
            )

        return PerformanceDashboardData(
            current_connections=1,
            total_queries=stats.total_queries,
            avg_query_time=stats.avg_query_time,
            slow_queries=stats.slow_queries,
            cache_hit_rate=stats.cache_hit_rate(),
            top_slow_queries=[
                SlowQuerySummary(
                    query=row.sql if len(row.sql) <= DASHBOARD_SQL_PREVIEW else row.sql[:DASHBOARD_SQL_PREVIEW] + '...',
                    avg_time=round(float(row.avg_time), 2),
                    count=int(row.count),
                )
                for row in top
            ],
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def update_database_statistics(self) -> List[TableStatistics]:
        """Run ANALYZE and upsert one table_statistics row per table.

        Returns:
            The refreshed statistics

        Raises:
            StatisticsRefreshError: If ANALYZE, a count or the upsert fails
        """
        now = self._clock()
        refreshed: List[Dict[str, Any]] = []
        try:
            with self.engine.begin() as conn:
                conn.execute(text('ANALYZE'))
                for table in list_user_tables(conn):
                    quoted = quote_identifier(conn, table)
                    columns = table_columns(conn, table)
                    row_count = conn.execute(text(f'SELECT COUNT(*) FROM {quoted}')).scalar() or 0
                    index_count = conn.execute(
                        text("SELECT COUNT(*) FROM sqlite_master WHERE type = 'index' AND tbl_name = :table_name"),
                        {'table_name': table},
                    ).scalar() or 0
                    refreshed.append({
                        'table_name': table,
                        'row_count': row_count,
                        'avg_row_size': self._estimate_avg_row_size(conn, quoted, columns) if row_count else 0.0,
                        'index_count': index_count,
                        'column_count': len(columns),
                        'updated_at': now,
                    })

            with session_scope(self.session_factory) as session:
                results = [
                    TableStatistics.from_record(session.merge(TableStatisticsRecord(**stats)))
                    for stats in refreshed
                ]
        except SQLAlchemyError as e:
            logger.error(f'Statistics refresh failed: {e}', exc_info=True)
            raise StatisticsRefreshError(f'Statistics refresh failed: {e}') from e

        logger.info(f'Refreshed statistics for {len(refreshed)} tables')
        return results

    def _estimate_avg_row_size(self, conn: Connection, quoted_table: str, columns: List[str]) -> float:
        if not columns:
            return 0.0
        widths = ' + '.join(
            f'COALESCE(LENGTH(CAST({quote_identifier(conn, column)} AS BLOB)), 0)' for column in columns
        )
        avg_size = conn.execute(
            text(f'SELECT AVG({widths}) FROM (SELECT * FROM {quoted_table} LIMIT {STATISTICS_SAMPLE_ROWS})')
        ).scalar()
        return round(float(avg_size or 0.0), 2)


class _IndexCoverage:
    """Caches index definitions per table for one connection."""

    def __init__(self, conn: Connection):
        self._conn = conn
        self._tables: Dict[str, Tuple[List[List[str]], List[str]]] = {}

    def covers(self, table: str, columns: List[str]) -> bool:
        """True if some index has ``columns`` as its leftmost prefix."""
        if table not in self._tables:
            self._tables[table] = (
                list(index_definitions(self._conn, table).values()),
                primary_key_columns(self._conn, table),
            )
        indexes, primary_key = self._tables[table]
        if primary_key and primary_key[:len(columns)] == columns:
            return True
        return any(index[:len(columns)] == columns for index in indexes)
