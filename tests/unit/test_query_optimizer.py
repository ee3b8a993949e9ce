"""Unit tests for QueryOptimizer instrumentation, analysis and reports."""

import json
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from conftest import count_log_rows
from dbops.lib.config import QueryOptimizerConfig
from dbops.lib.database import session_scope
from dbops.lib.errors import StatisticsRefreshError
from dbops.models.query_metrics import SuggestionPriority, SuggestionType
from dbops.models.query_performance_log import QueryPerformanceLog
from dbops.models.table_statistics import TableStatisticsRecord
from dbops.services.query_optimizer import (
  QueryOptimizer,
  WindowStatistics,
  calculate_index_effectiveness,
  estimate_rows_scanned,
  generate_query_id,
  sql_digest,
)


def _log_rows(session_factory):
  with session_scope(session_factory) as session:
    return session.query(QueryPerformanceLog).order_by(QueryPerformanceLog.id).all()


class TestHelpers:
  def test_query_id_is_digest_prefix(self):
    sql = 'SELECT * FROM users'
    assert generate_query_id(sql) == sql_digest(sql)[:16]
    assert sql_digest('select *  from USERS;') == sql_digest(sql)

  def test_rows_scanned_estimate(self):
    assert estimate_rows_scanned(5, has_where=True) == 10
    assert estimate_rows_scanned(5, has_where=False) == 50

  def test_index_effectiveness_monotonic(self):
    for avg_time in (0.0, 50.0, 1000.0, 6000.0):
      scores = [calculate_index_effectiveness(count, avg_time) for count in range(0, 300, 10)]
      assert scores == sorted(scores)
    for count in (0, 10, 100, 500):
      scores = [calculate_index_effectiveness(count, avg) for avg in range(0, 8000, 250)]
      assert scores == sorted(scores, reverse=True)

  def test_index_effectiveness_bounds(self):
    assert calculate_index_effectiveness(0, 10_000) == 0.0
    assert calculate_index_effectiveness(1_000, 0) == 100.0

  def test_window_statistics_rates(self):
    stats = WindowStatistics(total_queries=20, cache_hits=5, failed_queries=2, filtered_queries=4, indexed_filtered_queries=3)

    assert stats.cache_hit_rate() == 25.0
    assert stats.error_rate() == 10.0
    assert stats.index_efficiency() == 75.0
    assert WindowStatistics().cache_hit_rate() == 0.0
    assert WindowStatistics().cache_hit_rate(when_idle=100.0) == 100.0
    assert WindowStatistics().index_efficiency() == 100.0


class TestExecuteWithMetrics:
  def test_returns_rows_and_records_metric(self, optimizer, app_tables, session_factory, clock):
    sql = 'SELECT id, email FROM users ORDER BY id'

    result = optimizer.execute_with_metrics(sql)

    assert result.rowcount == 3
    assert [row.id for row in result.all()] == [1, 2, 3]
    assert result.first().email == 'ada@example.com'
    assert result.metric.query_id == generate_query_id(sql)
    assert result.metric.cache_hit is False
    assert result.metric.timestamp == clock()

    rows = _log_rows(session_factory)
    assert len(rows) == 1
    assert rows[0].sql_hash == sql_digest(sql)
    assert rows[0].rows_returned == 3
    assert rows[0].query_type == 'select'
    assert json.loads(rows[0].query_pattern)['tables'] == ['users']

  def test_bind_parameters_and_explicit_query_id(self, optimizer, app_tables, session_factory):
    result = optimizer.execute_with_metrics(
      text('SELECT name FROM users WHERE id = :id'), {'id': 2}, query_id='user-by-id'
    )

    assert result.first().name == 'Grace'
    assert result.metric.query_id == 'user-by-id'
    assert _log_rows(session_factory)[0].query_id == 'user-by-id'

  def test_write_statement_reports_affected_rows(self, optimizer, app_tables):
    result = optimizer.execute_with_metrics("UPDATE orders SET status = 'closed' WHERE user_id = 1")

    assert result.rows == []
    assert result.rowcount == 2

  def test_indexes_used_from_query_plan(self, optimizer, app_tables):
    result = optimizer.execute_with_metrics('SELECT * FROM orders WHERE user_id = :uid', {'uid': 1})

    assert 'idx_orders_user_id' in result.metric.indexes_used

  def test_full_scan_uses_no_index(self, optimizer, app_tables):
    result = optimizer.execute_with_metrics("SELECT * FROM orders WHERE status = 'open'")

    assert result.metric.indexes_used == []

  def test_cache_hit_skips_execution(self, optimizer, app_tables, session_factory, clock):
    first = optimizer.execute_with_metrics('SELECT * FROM users', cache_key='all-users')
    clock.advance(seconds=10)

    with patch.object(optimizer.engine, 'begin') as begin:
      second = optimizer.execute_with_metrics('SELECT * FROM users', cache_key='all-users')
      begin.assert_not_called()

    assert first.rows is not None
    assert second.rows is None
    assert second.metric.cache_hit is True
    assert second.metric.execution_time == first.metric.execution_time
    assert second.rowcount == 3

    rows = _log_rows(session_factory)
    assert [row.cache_hit for row in rows] == [False, True]
    assert rows[1].timestamp == clock()

  def test_cache_entry_expires_after_ttl(self, optimizer, app_tables):
    optimizer.execute_with_metrics('SELECT * FROM users', cache_key='all-users')
    optimizer._clock.advance(seconds=QueryOptimizerConfig().cache_ttl_seconds + 1)

    result = optimizer.execute_with_metrics('SELECT * FROM users', cache_key='all-users')

    assert result.rows is not None
    assert result.metric.cache_hit is False

  def test_clear_cache(self, optimizer, app_tables):
    optimizer.execute_with_metrics('SELECT * FROM users', cache_key='all-users')
    optimizer.clear_cache()

    result = optimizer.execute_with_metrics('SELECT * FROM users', cache_key='all-users')

    assert result.metric.cache_hit is False

  def test_failure_is_recorded_and_raised(self, optimizer, app_tables, session_factory):
    with pytest.raises(OperationalError):
      optimizer.execute_with_metrics('SELECT * FROM missing_table')

    rows = _log_rows(session_factory)
    assert len(rows) == 1
    assert rows[0].error_type == 'OperationalError'
    assert rows[0].rows_returned == 0

  def test_metric_persistence_failure_does_not_raise(self, optimizer, app_tables, caplog):
    optimizer.session_factory = Mock(side_effect=RuntimeError('store is read-only'))

    result = optimizer.execute_with_metrics('SELECT * FROM users')

    assert result.rowcount == 3
    assert any('Failed to record query metric' in record.message for record in caplog.records)

  def test_logging_disabled_persists_nothing(self, engine, session_factory, app_tables, clock):
    optimizer = QueryOptimizer(
      engine, session_factory, config=QueryOptimizerConfig(enable_logging=False), clock=clock
    )

    optimizer.execute_with_metrics('SELECT * FROM users')

    assert count_log_rows(session_factory) == 0

  def test_slow_query_is_logged_with_suggestions(self, engine, session_factory, app_tables, clock, caplog):
    optimizer = QueryOptimizer(
      engine, session_factory, config=QueryOptimizerConfig(slow_query_threshold_ms=1e-9), clock=clock
    )

    optimizer.execute_with_metrics("SELECT * FROM orders WHERE status = 'open'")

    assert any('Slow query detected' in record.message for record in caplog.records)
    events = [r for r in caplog.records if r.name == 'dbops.events' and r.getMessage() == 'query.slow']
    assert events
    assert events[0].context['suggestions']


class TestAnalyzeAndOptimizeQuery:
  def test_select_star_without_index(self, optimizer, engine):
    with engine.begin() as conn:
      conn.exec_driver_sql('CREATE TABLE t (id INTEGER PRIMARY KEY, x INTEGER)')

    suggestions = optimizer.analyze_and_optimize_query('SELECT * FROM t WHERE t.x = 1')

    high = [s for s in suggestions if s.priority == SuggestionPriority.HIGH]
    medium = [s for s in suggestions if s.priority == SuggestionPriority.MEDIUM]
    assert any(s.type == SuggestionType.INDEX and 'CREATE INDEX' in s.suggested_sql for s in high)
    assert any('SELECT *' in s.message for s in medium)

  def test_existing_index_suppresses_index_suggestion(self, optimizer, engine):
    with engine.begin() as conn:
      conn.exec_driver_sql('CREATE TABLE t (id INTEGER PRIMARY KEY, x INTEGER)')
      conn.exec_driver_sql('CREATE INDEX idx_t_x ON t(x)')

    suggestions = optimizer.analyze_and_optimize_query('SELECT * FROM t WHERE t.x = 1')

    assert not [s for s in suggestions if s.type == SuggestionType.INDEX]

  def test_composite_index_prefix_covers_column(self, optimizer, engine):
    with engine.begin() as conn:
      conn.exec_driver_sql('CREATE TABLE t (id INTEGER PRIMARY KEY, x INTEGER, y INTEGER)')
      conn.exec_driver_sql('CREATE INDEX idx_t_x_y ON t(x, y)')

    covered = optimizer.analyze_and_optimize_query('SELECT id FROM t WHERE x = 1')
    uncovered = optimizer.analyze_and_optimize_query('SELECT id FROM t WHERE y = 1')

    assert not [s for s in covered if s.type == SuggestionType.INDEX]
    assert [s.suggested_index for s in uncovered if s.type == SuggestionType.INDEX] == ['idx_t_y']

  def test_join_columns_suggest_indexes(self, optimizer, app_tables):
    suggestions = optimizer.analyze_and_optimize_query(
      'SELECT o.id FROM orders o JOIN audit_events a ON o.status = a.message'
    )

    names = {s.suggested_index for s in suggestions if s.type == SuggestionType.INDEX}
    assert names == {'idx_orders_status', 'idx_audit_events_message'}

  def test_order_by_suggests_composite_index(self, optimizer, app_tables):
    suggestions = optimizer.analyze_and_optimize_query('SELECT id FROM orders ORDER BY status, total LIMIT 5')

    composite = [s for s in suggestions if s.suggested_index == 'idx_orders_status_total']
    assert composite and composite[0].priority == SuggestionPriority.MEDIUM

  def test_large_result_suggests_limit(self, optimizer, engine):
    with engine.begin() as conn:
      conn.exec_driver_sql('CREATE TABLE t (id INTEGER PRIMARY KEY, x INTEGER)')
      conn.execute(text('INSERT INTO t (x) VALUES (:x)'), [{'x': i} for i in range(1500)])

    suggestions = optimizer.analyze_and_optimize_query('SELECT x FROM t')

    assert any('LIMIT' in s.message for s in suggestions)

  def test_in_subquery_suggests_join(self, optimizer, app_tables):
    suggestions = optimizer.analyze_and_optimize_query(
      'SELECT id FROM users WHERE id IN (SELECT user_id FROM orders) LIMIT 10'
    )

    assert any('JOIN' in s.message for s in suggestions)


class TestSlowQueryReport:
  def test_aggregates_by_digest(self, optimizer, app_tables, seed_query_log, clock):
    sql = "SELECT * FROM orders WHERE status = 'open'"
    seed_query_log(sql, count=50, execution_time=1500, start=clock() - timedelta(hours=2), spacing=timedelta(minutes=2))
    seed_query_log('SELECT id FROM users', count=20, execution_time=5, start=clock() - timedelta(hours=1))

    reports = optimizer.generate_slow_query_report(days=1)

    assert len(reports) == 1
    assert reports[0].query == sql
    assert reports[0].total_executions == 50
    assert reports[0].avg_execution_time == 1500.0
    assert reports[0].suggestions

  def test_ignores_cache_hits_failures_and_old_rows(self, optimizer, app_tables, seed_query_log, clock):
    sql = 'SELECT * FROM users WHERE name = :name'
    seed_query_log(sql, count=5, execution_time=1200, start=clock() - timedelta(hours=3))
    seed_query_log(sql, count=5, execution_time=9000, start=clock() - timedelta(hours=3), cache_hit=True)
    seed_query_log(sql, count=5, execution_time=9000, start=clock() - timedelta(hours=3), error_type='OperationalError')
    seed_query_log(sql, count=5, execution_time=9000, start=clock() - timedelta(days=10))

    reports = optimizer.generate_slow_query_report(days=7)

    assert len(reports) == 1
    assert reports[0].total_executions == 5
    assert reports[0].max_execution_time == 1200.0

  def test_occasional_slow_runs_of_a_fast_query_are_reported(self, optimizer, app_tables, seed_query_log, clock):
    sql = 'SELECT * FROM orders WHERE user_id = 1'
    seed_query_log(sql, count=100, execution_time=10, start=clock() - timedelta(hours=3))
    seed_query_log(sql, count=5, execution_time=5000, start=clock() - timedelta(hours=1))

    reports = optimizer.generate_slow_query_report(days=1)

    assert len(reports) == 1
    assert reports[0].total_executions == 5
    assert reports[0].avg_execution_time == 5000.0

  def test_orders_by_average_time(self, optimizer, app_tables, seed_query_log, clock):
    start = clock() - timedelta(hours=1)
    seed_query_log('SELECT * FROM users', count=2, execution_time=1100, start=start)
    seed_query_log('SELECT * FROM orders', count=2, execution_time=3000, start=start)

    reports = optimizer.generate_slow_query_report()

    assert [r.query for r in reports] == ['SELECT * FROM orders', 'SELECT * FROM users']


class TestIndexUsage:
  def test_counts_usage_and_flags_unused(self, optimizer, app_tables, engine, seed_query_log, clock):
    with engine.begin() as conn:
      conn.exec_driver_sql('CREATE INDEX idx_orders_status ON orders(status)')
    seed_query_log(
      'SELECT * FROM orders WHERE user_id = 1', count=3, execution_time=20,
      start=clock() - timedelta(days=1), indexes_used=['idx_orders_user_id'],
    )

    usage = {u.index_name: u for u in optimizer.analyze_index_usage(days=30)}

    assert usage['idx_orders_user_id'].usage_count == 3
    assert usage['idx_orders_user_id'].unused is False
    assert usage['idx_orders_user_id'].table_name == 'orders'
    assert usage['idx_orders_status'].unused is True
    assert usage['idx_orders_status'].effectiveness == calculate_index_effectiveness(0, 0.0)
    assert not [name for name in usage if name.startswith('ix_query_performance_log')]

  def test_cache_hits_and_failures_do_not_count_as_usage(self, optimizer, app_tables, seed_query_log, clock):
    sql = 'SELECT * FROM orders WHERE user_id = 1'
    start = clock() - timedelta(hours=2)
    seed_query_log(sql, count=2, execution_time=20, start=start, indexes_used=['idx_orders_user_id'])
    seed_query_log(sql, count=5, execution_time=20, start=start, indexes_used=['idx_orders_user_id'], cache_hit=True)
    seed_query_log(
      sql, count=3, execution_time=900, start=start,
      indexes_used=['idx_orders_user_id'], error_type='OperationalError',
    )

    usage = {u.index_name: u for u in optimizer.analyze_index_usage(days=1)}

    assert usage['idx_orders_user_id'].usage_count == 2
    assert usage['idx_orders_user_id'].avg_execution_time == 20.0
    assert usage['idx_orders_user_id'].effectiveness == calculate_index_effectiveness(2, 20.0)

  def test_name_prefix_is_not_a_match(self, optimizer, app_tables, engine, seed_query_log, clock):
    with engine.begin() as conn:
      conn.exec_driver_sql('CREATE INDEX idx_orders ON orders(total)')
    seed_query_log(
      'SELECT * FROM orders WHERE user_id = 1', count=2, execution_time=20,
      start=clock() - timedelta(hours=1), indexes_used=['idx_orders_user_id'],
    )

    usage = {u.index_name: u for u in optimizer.analyze_index_usage()}

    assert usage['idx_orders'].usage_count == 0


class TestSuggestAutoIndexes:
  def test_frequent_slow_where_columns(self, optimizer, app_tables, seed_query_log, clock):
    seed_query_log(
      "SELECT * FROM orders WHERE status = 'open'", count=12, execution_time=150,
      start=clock() - timedelta(days=2),
    )

    assert optimizer.suggest_auto_indexes() == [
      'CREATE INDEX IF NOT EXISTS idx_orders_status_auto ON orders(status)'
    ]

  def test_thresholds_not_met(self, optimizer, app_tables, seed_query_log, clock):
    start = clock() - timedelta(days=2)
    seed_query_log("SELECT * FROM orders WHERE status = 'open'", count=12, execution_time=50, start=start)
    seed_query_log("SELECT * FROM orders WHERE total = 5", count=9, execution_time=500, start=start)

    assert optimizer.suggest_auto_indexes() == []

  def test_covered_columns_skipped(self, optimizer, app_tables, seed_query_log, clock):
    start = clock() - timedelta(days=2)
    seed_query_log('SELECT * FROM orders WHERE user_id = 1', count=12, execution_time=150, start=start)
    seed_query_log("SELECT * FROM users WHERE email = 'a'", count=12, execution_time=150, start=start)
    seed_query_log(
      'SELECT o.id FROM orders o JOIN users u ON o.user_id = u.id', count=6, execution_time=250, start=start
    )

    assert optimizer.suggest_auto_indexes() == []

  def test_join_columns(self, optimizer, app_tables, seed_query_log, clock):
    seed_query_log(
      'SELECT o.id FROM orders o JOIN audit_events a ON o.status = a.message', count=6,
      execution_time=250, start=clock() - timedelta(days=1),
    )

    statements = optimizer.suggest_auto_indexes()

    assert 'CREATE INDEX IF NOT EXISTS idx_orders_status_join_auto ON orders(status)' in statements
    assert 'CREATE INDEX IF NOT EXISTS idx_audit_events_message_join_auto ON audit_events(message)' in statements


class TestDashboardAndStatistics:
  def test_dashboard_data(self, optimizer, app_tables, seed_query_log, clock):
    start = clock() - timedelta(minutes=30)
    seed_query_log('SELECT * FROM orders', count=3, execution_time=2500, start=start)
    seed_query_log('SELECT id FROM users', count=6, execution_time=10, start=start)
    seed_query_log('SELECT id FROM users', count=3, execution_time=10, start=start, cache_hit=True)
    seed_query_log('SELECT id FROM users', count=3, execution_time=10, start=clock() - timedelta(hours=3))

    data = optimizer.get_performance_dashboard_data()

    assert data.current_connections == 1
    assert data.total_queries == 12
    assert data.slow_queries == 3
    assert data.cache_hit_rate == 25.0
    assert [q.query for q in data.top_slow_queries] == ['SELECT * FROM orders']
    assert data.top_slow_queries[0].count == 3

  def test_dashboard_lists_slow_runs_of_a_mostly_fast_query(self, optimizer, app_tables, seed_query_log, clock):
    sql = 'SELECT * FROM orders WHERE user_id = 1'
    start = clock() - timedelta(minutes=40)
    seed_query_log(sql, count=30, execution_time=10, start=start)
    seed_query_log(sql, count=2, execution_time=4000, start=start)

    data = optimizer.get_performance_dashboard_data()

    assert [(q.query, q.count, q.avg_time) for q in data.top_slow_queries] == [(sql, 2, 4000.0)]

  def test_dashboard_truncates_long_sql(self, optimizer, seed_query_log, clock):
    sql = 'SELECT ' + ', '.join(f'column_{i}' for i in range(40)) + ' FROM wide_table'
    seed_query_log(sql, count=1, execution_time=5000, start=clock() - timedelta(minutes=5))

    preview = optimizer.get_performance_dashboard_data().top_slow_queries[0].query

    assert len(preview) == 103
    assert preview.endswith('...')

  def test_window_statistics_index_efficiency(self, optimizer, seed_query_log, clock):
    start = clock() - timedelta(minutes=30)
    seed_query_log('SELECT * FROM orders WHERE user_id = 1', count=3, execution_time=5, start=start, indexes_used=['idx_orders_user_id'])
    seed_query_log("SELECT * FROM orders WHERE status = 'open'", count=1, execution_time=5, start=start)
    seed_query_log('SELECT * FROM orders', count=4, execution_time=5, start=start)

    stats = optimizer.window_statistics(clock() - timedelta(hours=1), include_index_efficiency=True)

    assert stats.filtered_queries == 4
    assert stats.indexed_filtered_queries == 3
    assert stats.index_efficiency() == 75.0

  def test_update_database_statistics(self, optimizer, app_tables, session_factory, clock):
    stats = {s.table_name: s for s in optimizer.update_database_statistics()}

    assert stats['users'].row_count == 3
    assert stats['users'].column_count == 6
    assert stats['users'].avg_row_size > 0
    assert stats['orders'].index_count == 1
    assert stats['audit_events'].row_count == 2
    with session_scope(session_factory) as session:
      record = session.get(TableStatisticsRecord, 'orders')
      assert record.row_count == 3
      assert record.updated_at == clock()

  def test_statistics_refresh_failure(self, optimizer):
    failing_engine = Mock()
    failing_engine.begin.side_effect = OperationalError('ANALYZE', {}, Exception('disk I/O error'))
    optimizer.engine = failing_engine

    with pytest.raises(StatisticsRefreshError):
      optimizer.update_database_statistics()
