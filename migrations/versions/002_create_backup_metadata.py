"""Create backup_metadata table

Revision ID: 002
Revises: 001
Create Date: 2026-09-28 10:30:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade():
  op.create_table(
    'backup_metadata',
    sa.Column('id', sa.String(length=100), nullable=False),
    sa.Column('timestamp', sa.DateTime(), nullable=False),
    sa.Column('backup_type', sa.String(length=20), nullable=False),
    sa.Column('size_bytes', sa.Integer(), nullable=False),
    sa.Column('compressed', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('encrypted', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('checksum', sa.String(length=64), nullable=False),
    sa.Column('tables', sa.Text(), nullable=False, server_default='[]'),
    sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('version', sa.String(length=20), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='completed'),
    sa.Column('storage_path', sa.String(length=1000), nullable=True),
    sa.Column('based_on', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id'),
  )

  op.create_index('ix_backup_metadata_timestamp', 'backup_metadata', ['timestamp'])


def downgrade():
  op.drop_index('ix_backup_metadata_timestamp', table_name='backup_metadata')
  op.drop_table('backup_metadata')
