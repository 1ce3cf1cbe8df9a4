"""token blocklist for logout

Revision ID: 0002_revoked_tokens
Revises: 0001_initial_pbac
Create Date: 2026-10-14
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

revision = '0002_revoked_tokens'
down_revision = '0001_initial_pbac'
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind(); insp = inspect(bind)
    if insp.has_table('revoked_tokens'):
        return
    op.create_table('revoked_tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('jti', sa.String(length=64), nullable=False, unique=True),
        sa.Column('token_type', sa.String(length=16), nullable=False, server_default='access'),
        sa.Column('user_id', sa.Integer()),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_revoked_tokens_jti', 'revoked_tokens', ['jti'])


def downgrade():
    bind = op.get_bind(); insp = inspect(bind)
    if insp.has_table('revoked_tokens'):
        op.drop_table('revoked_tokens')
