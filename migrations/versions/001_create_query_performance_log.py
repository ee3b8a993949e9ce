"""Create query_performance_log table

Revision ID: 001
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
  op.create_table(
    'query_performance_log',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('query_id', sa.String(length=64), nullable=False),
    sa.Column('sql_hash', sa.String(length=64), nullable=False),
    sa.Column('sql', sa.Text(), nullable=False),
    sa.Column('execution_time', sa.Float(), nullable=False),
    sa.Column('rows_returned', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('rows_scanned', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('indexes_used', sa.Text(), nullable=False, server_default='[]'),
    sa.Column('cache_hit', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('query_type', sa.String(length=16), nullable=True),
    sa.Column('query_pattern', sa.Text(), nullable=True),
    sa.Column('error_type', sa.String(length=255), nullable=True),
    sa.Column('timestamp', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
  )

  # Time-window scans and per-digest grouping
  op.create_index('ix_query_performance_log_timestamp', 'query_performance_log', ['timestamp'])
  op.create_index('ix_query_performance_log_sql_hash', 'query_performance_log', ['sql_hash'])


def downgrade():
  op.drop_index('ix_query_performance_log_sql_hash', table_name='query_performance_log')
  op.drop_index('ix_query_performance_log_timestamp', table_name='query_performance_log')
  op.drop_table('query_performance_log')
