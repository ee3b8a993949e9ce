"""Create system_performance_snapshots table

Revision ID: 004
Revises: 003
Create Date: 2026-09-29 11:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = '004'
down_revision = '003'
branch_labels = None
depends_on = None


def upgrade():
  op.create_table(
    'system_performance_snapshots',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('snapshot_type', sa.String(length=10), nullable=False),
    sa.Column('total_queries', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('avg_query_time', sa.Float(), nullable=False, server_default='0'),
    sa.Column('slow_queries', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('failed_queries', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('cache_hit_rate', sa.Float(), nullable=False, server_default='0'),
    sa.Column('period_start', sa.DateTime(), nullable=False),
    sa.Column('period_end', sa.DateTime(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
  )

  # Trend queries filter by type and order by creation time
  op.create_index(
    'ix_system_performance_snapshots_type_created',
    'system_performance_snapshots',
    ['snapshot_type', 'created_at'],
  )


def downgrade():
  op.drop_index(
    'ix_system_performance_snapshots_type_created', table_name='system_performance_snapshots'
  )
  op.drop_table('system_performance_snapshots')
