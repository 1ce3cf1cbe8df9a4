"""initial PBAC tables: catalog, roles, units, users, per-user overrides, audit

Revision ID: 0001_initial_pbac
Revises:
Create Date: 2026-10-12
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_pbac'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, **kw):
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), **kw)


def upgrade():
    op.create_table('permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False, unique=True),
        sa.Column('description', sa.String(length=255)),
        sa.Column('is_composite', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='SET NULL')),
        _timestamp('updated_at'),
    )
    op.create_index('ix_permissions_name', 'permissions', ['name'])

    op.create_table('permission_scopes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('default_scope_type', sa.String(length=8), nullable=False, server_default='GLOBAL'),
    )

    op.create_table('roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False, unique=True),
        sa.Column('description', sa.String(length=255)),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        _timestamp('updated_at'),
    )

    op.create_table('role_permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
    )
    # unique constraint handled via batch for sqlite
    with op.batch_alter_table('role_permissions') as batch_op:
        batch_op.create_unique_constraint('uq_role_permission', ['role_id', 'permission_id'])

    op.create_table('units',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('code', sa.String(length=32), unique=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('units.id', ondelete='SET NULL')),
    )

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id'), nullable=False),
        sa.Column('unit_id', sa.Integer(), sa.ForeignKey('units.id', ondelete='SET NULL')),
        _timestamp('updated_at'),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_role_id', 'users', ['role_id'])
    op.create_index('ix_users_unit_id', 'users', ['unit_id'])

    op.create_table('user_permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('granted', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('scope_type', sa.String(length=8), nullable=False, server_default='GLOBAL'),
        sa.Column('scope_id', sa.Integer()),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        sa.Column('created_by', sa.Integer()),
        sa.Column('updated_by', sa.Integer()),
        _timestamp('created_at'),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_user_permissions_user_perm', 'user_permissions', ['user_id', 'permission_id'])

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64)),
        sa.Column('entity_id', sa.String(length=64)),
        sa.Column('role', sa.String(length=64)),
        sa.Column('meta', sa.JSON(), nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity', 'entity_id'])


def downgrade():
    for tbl in ['audit_logs', 'user_permissions', 'users', 'units', 'role_permissions', 'roles', 'permission_scopes', 'permissions']:
        op.drop_table(tbl)
