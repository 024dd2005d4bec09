"""Initial governance schema

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


def upgrade() -> None:
    op.create_table(
        'teams',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('inherit_global_rules', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    op.create_table(
        'categories',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    op.create_table(
        'rules',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('target_layer', sa.String(length=12), nullable=False),
        sa.Column('category_id', sa.String(length=36), nullable=True),
        sa.Column('team_id', sa.String(length=36), nullable=True),
        sa.Column('force', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=8), nullable=False),
        sa.Column('enforcement_mode', sa.String(length=9), nullable=False),
        sa.Column('temporary_timeout_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('priority_weight', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overridable', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('effective_start', sa.DateTime(), nullable=True),
        sa.Column('effective_end', sa.DateTime(), nullable=True),
        sa.Column('triggers', sa.JSON(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('approval_round', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('revises_rule_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_rules_team_id', 'rules', ['team_id'])
    op.create_index('ix_rules_status', 'rules', ['status'])
    op.create_index('idx_rules_team_status', 'rules', ['team_id', 'status'])

    op.create_table(
        'rule_approvals',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('rule_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('decision', sa.String(length=8), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('approval_round', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['rule_id'], ['rules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_id', 'user_id', 'approval_round', name='uq_rule_user_round')
    )
    op.create_index('idx_rule_approvals_rule_round', 'rule_approvals', ['rule_id', 'approval_round'])

    op.create_table(
        'approval_configs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('scope', sa.String(length=12), nullable=False),
        sa.Column('team_id', sa.String(length=36), nullable=True),
        sa.Column('required_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scope', 'team_id', name='uq_approval_scope_team')
    )

    op.create_table(
        'change_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('rule_id', sa.String(length=36), nullable=False),
        sa.Column('team_id', sa.String(length=36), nullable=False),
        sa.Column('agent_id', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('file_path', sa.String(length=1024), nullable=False),
        sa.Column('original_hash', sa.String(length=128), nullable=False),
        sa.Column('modified_hash', sa.String(length=128), nullable=False),
        sa.Column('diff_content', sa.Text(), nullable=False),
        sa.Column('enforcement_mode', sa.String(length=9), nullable=False),
        sa.Column('timeout_hours', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=17), nullable=False),
        sa.Column('timeout_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['rule_id'], ['rules.id']),
        sa.ForeignKeyConstraint(['team_id'], ['teams.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_change_requests_status_timeout', 'change_requests', ['status', 'timeout_at'])
    op.create_index('idx_change_requests_team_status', 'change_requests', ['team_id', 'status'])
    op.create_index(
        'idx_change_requests_file', 'change_requests', ['team_id', 'rule_id', 'file_path']
    )

    op.create_table(
        'exception_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('change_request_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('justification', sa.Text(), nullable=False),
        sa.Column('exception_type', sa.String(length=12), nullable=False),
        sa.Column('status', sa.String(length=8), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['change_request_id'], ['change_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'idx_exception_requests_change_status', 'exception_requests', ['change_request_id', 'status']
    )
    op.create_index(
        'idx_exception_requests_status_expires', 'exception_requests', ['status', 'expires_at']
    )

    op.create_table(
        'audit_entries',
        sa.Column('seq', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('entity_type', sa.String(length=17), nullable=False),
        sa.Column('entity_id', sa.String(length=36), nullable=False),
        sa.Column('action', sa.String(length=18), nullable=False),
        sa.Column('actor_id', sa.String(length=255), nullable=True),
        sa.Column('actor_name', sa.String(length=255), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('seq'),
        sa.UniqueConstraint('id')
    )
    op.create_index('ix_audit_entries_action', 'audit_entries', ['action'])
    op.create_index('ix_audit_entries_actor_id', 'audit_entries', ['actor_id'])
    op.create_index('ix_audit_entries_created_at', 'audit_entries', ['created_at'])
    op.create_index('idx_audit_entity', 'audit_entries', ['entity_type', 'entity_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('idx_audit_entity', table_name='audit_entries')
    op.drop_index('ix_audit_entries_created_at', table_name='audit_entries')
    op.drop_index('ix_audit_entries_actor_id', table_name='audit_entries')
    op.drop_index('ix_audit_entries_action', table_name='audit_entries')
    op.drop_table('audit_entries')

    op.drop_index('idx_exception_requests_status_expires', table_name='exception_requests')
    op.drop_index('idx_exception_requests_change_status', table_name='exception_requests')
    op.drop_table('exception_requests')

    op.drop_index('idx_change_requests_file', table_name='change_requests')
    op.drop_index('idx_change_requests_team_status', table_name='change_requests')
    op.drop_index('idx_change_requests_status_timeout', table_name='change_requests')
    op.drop_table('change_requests')

    op.drop_table('approval_configs')

    op.drop_index('idx_rule_approvals_rule_round', table_name='rule_approvals')
    op.drop_table('rule_approvals')

    op.drop_index('idx_rules_team_status', table_name='rules')
    op.drop_index('ix_rules_status', table_name='rules')
    op.drop_index('ix_rules_team_id', table_name='rules')
    op.drop_table('rules')

    op.drop_table('categories')
    op.drop_table('teams')
