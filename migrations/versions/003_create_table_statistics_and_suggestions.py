"""Create table_statistics and optimization_suggestions tables

Revision ID: 003
Revises: 002
Create Date: 2026-09-29 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = '003'
down_revision = '002'
branch_labels = None
depends_on = None


def upgrade():
  op.create_table(
    'table_statistics',
    sa.Column('table_name', sa.String(length=255), nullable=False),
    sa.Column('row_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('avg_row_size', sa.Float(), nullable=False, server_default='0'),
    sa.Column('index_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('column_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('table_name'),
  )

  op.create_table(
    'optimization_suggestions',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('suggestion_type', sa.String(length=20), nullable=False),
    sa.Column('priority', sa.String(length=10), nullable=False),
    sa.Column('target_query_pattern', sa.Text(), nullable=True),
    sa.Column('suggestion_title', sa.String(length=255), nullable=False),
    sa.Column('suggestion_description', sa.Text(), nullable=False),
    sa.Column('suggested_sql', sa.Text(), nullable=True),
    sa.Column('estimated_improvement', sa.Float(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('applied_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id'),
  )

  op.create_index('ix_optimization_suggestions_status', 'optimization_suggestions', ['status'])


def downgrade():
  op.drop_index('ix_optimization_suggestions_status', table_name='optimization_suggestions')
  op.drop_table('optimization_suggestions')
  op.drop_table('table_statistics')
