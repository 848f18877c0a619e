"""Initial chat schema: conversations, messages, projects, conversation_projects, shared_messages

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('conversations',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('title', sa.String(length=255), nullable=False),
    sa.Column('model_id', sa.String(length=100), nullable=True),
    sa.Column('starred', sa.Boolean(), nullable=False),
    sa.Column('archived', sa.Boolean(), nullable=False),
    sa.Column('is_public', sa.Boolean(), nullable=False),
    sa.Column('revision', sa.Integer(), nullable=False),
    sa.Column('forked_from_conversation_id', sa.String(length=36), nullable=True),
    sa.Column('forked_from_message_id', sa.String(length=36), nullable=True),
    sa.Column('forked_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.Column('last_message_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_conversations_starred'), 'conversations', ['starred'], unique=False)
    op.create_index(op.f('ix_conversations_archived'), 'conversations', ['archived'], unique=False)
    op.create_index(op.f('ix_conversations_revision'), 'conversations', ['revision'], unique=False)
    op.create_index(op.f('ix_conversations_last_message_at'), 'conversations', ['last_message_at'], unique=False)

    op.create_table('messages',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('conversation_id', sa.String(length=36), nullable=False),
    sa.Column('role', sa.String(length=20), nullable=False),
    sa.Column('content', sa.Text(), nullable=False),
    sa.Column('client_id', sa.String(length=64), nullable=True),
    sa.Column('meta_json', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('seq', sa.Integer(), nullable=False, server_default='0'),
    sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_messages_conversation_id'), 'messages', ['conversation_id'], unique=False)
    op.create_index('ix_messages_conversation_created', 'messages', ['conversation_id', 'created_at', 'seq'], unique=False)

    op.create_table('projects',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_projects_name'), 'projects', ['name'], unique=False)

    op.create_table('conversation_projects',
    sa.Column('conversation_id', sa.String(length=36), nullable=False),
    sa.Column('project_id', sa.String(length=36), nullable=False),
    sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('conversation_id', 'project_id')
    )
    op.create_index(op.f('ix_conversation_projects_conversation_id'), 'conversation_projects', ['conversation_id'], unique=False)
    op.create_index(op.f('ix_conversation_projects_project_id'), 'conversation_projects', ['project_id'], unique=False)

    op.create_table('shared_messages',
    sa.Column('id', sa.String(length=8), nullable=False),
    sa.Column('original_message_id', sa.String(length=36), nullable=True),
    sa.Column('conversation_id', sa.String(length=36), nullable=True),
    sa.Column('user_input', sa.Text(), nullable=False),
    sa.Column('response', sa.Text(), nullable=False),
    sa.Column('model_id', sa.String(length=100), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_shared_messages_created_at'), 'shared_messages', ['created_at'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_shared_messages_created_at'), table_name='shared_messages')
    op.drop_table('shared_messages')
    op.drop_index(op.f('ix_conversation_projects_project_id'), table_name='conversation_projects')
    op.drop_index(op.f('ix_conversation_projects_conversation_id'), table_name='conversation_projects')
    op.drop_table('conversation_projects')
    op.drop_index(op.f('ix_projects_name'), table_name='projects')
    op.drop_table('projects')
    op.drop_index('ix_messages_conversation_created', table_name='messages')
    op.drop_index(op.f('ix_messages_conversation_id'), table_name='messages')
    op.drop_table('messages')
    op.drop_index(op.f('ix_conversations_last_message_at'), table_name='conversations')
    op.drop_index(op.f('ix_conversations_revision'), table_name='conversations')
    op.drop_index(op.f('ix_conversations_archived'), table_name='conversations')
    op.drop_index(op.f('ix_conversations_starred'), table_name='conversations')
    op.drop_table('conversations')
