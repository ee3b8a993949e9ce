"""Unit tests for the heuristic SQL analyzer."""

from dbops.lib.sql_analysis import ColumnRef, RegexQueryAnalyzer, normalize_sql


class TestNormalizeSql:
  def test_collapses_whitespace_and_case(self):
    assert normalize_sql('  SELECT  *\n  FROM Users ; ') == 'select * from users'

  def test_equal_statements_normalize_identically(self):
    assert normalize_sql('select id from t where x = 1') == normalize_sql('SELECT id\nFROM t\nWHERE x = 1;')


class TestRegexQueryAnalyzer:
  def setup_method(self):
    self.analyzer = RegexQueryAnalyzer()

  def test_single_table_where_columns(self):
    pattern = self.analyzer.analyze("SELECT * FROM users WHERE email = 'ada@example.com'")

    assert pattern.query_type == 'select'
    assert pattern.tables == ('users',)
    assert pattern.main_table == 'users'
    assert pattern.where_columns == (ColumnRef('users', 'email'),)
    assert pattern.selects_all is True
    assert pattern.has_where is True
    assert pattern.has_limit is False

  def test_aliases_and_join_columns(self):
    pattern = self.analyzer.analyze(
      'SELECT o.id FROM orders o JOIN users u ON o.user_id = u.id WHERE u.email = :email'
    )

    assert pattern.tables == ('orders', 'users')
    assert pattern.aliases['o'] == 'orders'
    assert pattern.aliases['u'] == 'users'
    assert pattern.join_columns == (ColumnRef('orders', 'user_id'), ColumnRef('users', 'id'))
    assert pattern.where_columns == (ColumnRef('users', 'email'),)
    assert pattern.selects_all is False

  def test_unqualified_column_with_join_is_not_guessed(self):
    pattern = self.analyzer.analyze(
      "SELECT * FROM orders o JOIN users u ON o.user_id = u.id WHERE status = 'open'"
    )

    assert pattern.where_columns == ()

  def test_string_literals_do_not_produce_columns(self):
    pattern = self.analyzer.analyze("SELECT id FROM users WHERE name = 'a = b'")

    assert pattern.where_columns == (ColumnRef('users', 'name'),)

  def test_order_by_columns(self):
    pattern = self.analyzer.analyze('SELECT id FROM users ORDER BY created_at DESC, id LIMIT 10')

    assert pattern.order_by_columns == (ColumnRef('users', 'created_at'), ColumnRef('users', 'id'))
    assert pattern.has_limit is True

  def test_order_by_expression_yields_no_columns(self):
    pattern = self.analyzer.analyze('SELECT * FROM users ORDER BY lower(name)')

    assert pattern.order_by_columns == ()

  def test_in_subquery_detected(self):
    pattern = self.analyzer.analyze(
      "SELECT * FROM users WHERE id IN (SELECT user_id FROM orders WHERE status = 'open')"
    )

    assert pattern.has_in_subquery is True
    assert 'orders' in pattern.tables

  def test_write_statements(self):
    update = self.analyzer.analyze("UPDATE users SET name = 'x' WHERE id = 1")
    insert = self.analyzer.analyze('INSERT INTO audit_events (message) VALUES (:message)')

    assert update.query_type == 'update'
    assert update.tables == ('users',)
    assert ColumnRef('users', 'id') in update.where_columns
    assert insert.query_type == 'insert'
    assert insert.tables == ('audit_events',)

  def test_to_dict_is_serializable_summary(self):
    pattern = self.analyzer.analyze('SELECT * FROM orders WHERE user_id = 1')

    assert pattern.to_dict() == {
      'query_type': 'select',
      'tables': ['orders'],
      'where_columns': [{'table': 'orders', 'column': 'user_id'}],
      'join_columns': [],
    }

  def test_unrecognized_sql_does_not_raise(self):
    pattern = self.analyzer.analyze('PRAGMA integrity_check')

    assert pattern.query_type == 'pragma'
    assert pattern.tables == ()
