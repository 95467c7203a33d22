"""Initial schema with entities, dependencies, comments, history and search tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENTITY_KIND = sa.Enum('epic', 'task', 'subtask', name='entitykind')
ENTITY_STATUS = sa.Enum('todo', 'in_progress', 'completed', 'wont_fix', 'archived', name='entitystatus')
CHANGE_TYPE = sa.Enum(
    'created', 'updated', 'status_changed', 'priority_changed',
    'dependency_added', 'dependency_removed', 'commented',
    name='changetype',
)

TRIGGERS = {
    'history_events_no_update': ('UPDATE', 'history_events', 'history_events is append-only'),
    'history_events_no_delete': ('DELETE', 'history_events', 'history_events is append-only'),
    'comments_no_update': ('UPDATE', 'comments', 'comments are immutable'),
    'comments_no_delete': ('DELETE', 'comments', 'comments are immutable'),
}


def upgrade() -> None:
    # Create entities table (epics, tasks and subtasks share it)
    op.create_table(
        'entities',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('human_readable_id', sa.String(20), nullable=False, unique=True),
        sa.Column('kind', ENTITY_KIND, nullable=False),
        sa.Column('parent_id', sa.Integer, sa.ForeignKey('entities.id')),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('status', ENTITY_STATUS, nullable=False, server_default='todo'),
        sa.Column('priority', sa.Integer, nullable=False, server_default='2'),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.current_timestamp()),
        sa.CheckConstraint(
            "(kind = 'epic' AND parent_id IS NULL) OR (kind != 'epic' AND parent_id IS NOT NULL)",
            name='valid_parent'
        ),
        sa.CheckConstraint('priority >= 0 AND priority <= 5', name='chk_priority_range'),
        sa.CheckConstraint("kind != 'epic' OR status != 'wont_fix'", name='chk_epic_status'),
        sa.CheckConstraint('length(title) > 0', name='chk_title_not_empty'),
    )
    op.create_index('ix_entities_kind', 'entities', ['kind'])
    op.create_index('ix_entities_parent_id', 'entities', ['parent_id'])
    op.create_index('ix_entities_status', 'entities', ['status'])
    op.create_index('ix_entities_priority', 'entities', ['priority'])
    op.create_index('ix_entities_created_at', 'entities', ['created_at'])

    # Create dependency edges table
    op.create_table(
        'entity_dependencies',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('dependent_id', sa.Integer, sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('dependency_id', sa.Integer, sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.current_timestamp()),
        sa.UniqueConstraint('dependent_id', 'dependency_id', name='unique_entity_dependency'),
        sa.CheckConstraint('dependent_id != dependency_id', name='no_self_dependency'),
    )
    op.create_index('ix_entity_dependencies_dependent_id', 'entity_dependencies', ['dependent_id'])
    op.create_index('ix_entity_dependencies_dependency_id', 'entity_dependencies', ['dependency_id'])

    # Create comments table
    op.create_table(
        'comments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('human_readable_id', sa.String(20), nullable=False, unique=True),
        sa.Column('entity_id', sa.Integer, sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('author', sa.String(100), nullable=False),
        sa.Column('body', sa.Text, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.current_timestamp()),
    )
    op.create_index('ix_comments_entity_id', 'comments', ['entity_id'])

    # Create history table (AUTOINCREMENT so seq is never reused)
    op.create_table(
        'history_events',
        sa.Column('seq', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('entity_id', sa.String(20), nullable=False),
        sa.Column('entity_kind', ENTITY_KIND, nullable=False),
        sa.Column('change_type', CHANGE_TYPE, nullable=False),
        sa.Column('field_name', sa.String(50)),
        sa.Column('old_value', sa.Text),
        sa.Column('new_value', sa.Text),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('changed_at', sa.DateTime, nullable=False, server_default=sa.func.current_timestamp()),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_history_events_entity_id', 'history_events', ['entity_id'])
    op.create_index('ix_history_events_changed_at', 'history_events', ['changed_at'])

    # Create search postings table
    op.create_table(
        'search_postings',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('token', sa.String(100), nullable=False),
        sa.Column('entity_id', sa.Integer, sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('field', sa.String(20), nullable=False),
        sa.Column('comment_id', sa.Integer, sa.ForeignKey('comments.id')),
    )
    op.create_index('idx_search_postings_token', 'search_postings', ['token', 'entity_id'])
    op.create_index('ix_search_postings_entity_id', 'search_postings', ['entity_id'])

    # Create ID sequences table
    op.create_table(
        'id_sequences',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('prefix', sa.String(10), nullable=False, unique=True),
        sa.Column('next_number', sa.Integer, nullable=False, server_default='1'),
        sa.CheckConstraint('next_number > 0', name='chk_next_number_positive'),
    )

    # Append-only guards
    for name, (operation, table, message) in TRIGGERS.items():
        op.execute(
            f"CREATE TRIGGER {name} BEFORE {operation} ON {table} "
            f"BEGIN SELECT RAISE(ABORT, '{message}'); END"
        )


def downgrade() -> None:
    for name in TRIGGERS:
        op.execute(f"DROP TRIGGER IF EXISTS {name}")

    op.drop_table('id_sequences')
    op.drop_index('ix_search_postings_entity_id', 'search_postings')
    op.drop_index('idx_search_postings_token', 'search_postings')
    op.drop_table('search_postings')
    op.drop_index('ix_history_events_changed_at', 'history_events')
    op.drop_index('ix_history_events_entity_id', 'history_events')
    op.drop_table('history_events')
    op.drop_index('ix_comments_entity_id', 'comments')
    op.drop_table('comments')
    op.drop_index('ix_entity_dependencies_dependency_id', 'entity_dependencies')
    op.drop_index('ix_entity_dependencies_dependent_id', 'entity_dependencies')
    op.drop_table('entity_dependencies')
    op.drop_index('ix_entities_created_at', 'entities')
    op.drop_index('ix_entities_priority', 'entities')
    op.drop_index('ix_entities_status', 'entities')
    op.drop_index('ix_entities_parent_id', 'entities')
    op.drop_index('ix_entities_kind', 'entities')
    op.drop_table('entities')
