"""Create analytics event log and forum read models

Revision ID: 001
Revises:
Create Date: 2025-11-03 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
  op.create_table(
    'analytics_events',
    sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
    sa.Column('type', sa.String(length=50), nullable=False),
    sa.Column('entity_type', sa.String(length=50), nullable=False),
    sa.Column('entity_id', sa.String(length=255), nullable=True),
    sa.Column('user_id', sa.String(length=255), nullable=True),
    sa.Column('group_id', sa.String(length=255), nullable=True),
    sa.Column('metadata', postgresql.JSON(astext_type=sa.Text()), nullable=False),
    sa.PrimaryKeyConstraint('id'),
  )

  op.create_index('ix_analytics_events_timestamp', 'analytics_events', ['timestamp'])
  op.create_index('ix_analytics_events_type', 'analytics_events', ['type'])
  op.create_index('ix_analytics_events_group_id', 'analytics_events', ['group_id'])
  op.create_index('ix_analytics_events_user_id', 'analytics_events', ['user_id'])
  op.create_index('ix_analytics_events_entity_id', 'analytics_events', ['entity_id'])

  # Read models joined by the top content and export queries
  op.create_table(
    'forum_posts',
    sa.Column('id', sa.String(length=255), nullable=False),
    sa.Column('title', sa.String(length=500), nullable=False),
    sa.Column('content', sa.Text(), nullable=True),
    sa.Column('group_id', sa.String(length=255), nullable=True),
    sa.Column('author_id', sa.String(length=255), nullable=True),
    sa.Column('author_name', sa.String(length=255), nullable=True),
    sa.Column('like_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('comment_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
  )

  op.create_table(
    'forum_groups',
    sa.Column('id', sa.String(length=255), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('member_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('post_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
  )

  op.create_table(
    'users',
    sa.Column('id', sa.String(length=255), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=True),
    sa.PrimaryKeyConstraint('id'),
  )


def downgrade():
  op.drop_table('users')
  op.drop_table('forum_groups')
  op.drop_table('forum_posts')

  op.drop_index('ix_analytics_events_entity_id', table_name='analytics_events')
  op.drop_index('ix_analytics_events_user_id', table_name='analytics_events')
  op.drop_index('ix_analytics_events_group_id', table_name='analytics_events')
  op.drop_index('ix_analytics_events_type', table_name='analytics_events')
  op.drop_index('ix_analytics_events_timestamp', table_name='analytics_events')
  op.drop_table('analytics_events')
