"""Create onboarding sessions table

Revision ID: 3c9e1f7a2b40
Revises: 
Create Date: 2026-10-18 09:12:31.402117

"""
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '3c9e1f7a2b40'
down_revision = None
branch_labels = None
depends_on = None


def _json_type():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table('onboarding_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_email', sa.String(length=254), nullable=False),
        sa.Column('current_step', sa.String(length=32), nullable=False, server_default='welcome'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='in-progress'),
        sa.Column('completed_steps', _json_type(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('step_data', _json_type(), nullable=False),
        sa.Column('metadata', _json_type(), nullable=False),
        sa.Column('analytics', _json_type(), nullable=False),
        sa.Column('recovery_token', sa.String(length=64), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('recovery_token'),
        sa.CheckConstraint(
            "status IN ('in-progress', 'paused', 'completed', 'abandoned')",
            name='ck_onboarding_sessions_status',
        ),
        sa.CheckConstraint(
            "current_step IN ('welcome', 'business', 'integration', 'verification', 'bot-setup', 'testing', 'complete')",
            name='ck_onboarding_sessions_current_step',
        ),
    )
    op.create_index(op.f('ix_onboarding_sessions_user_email'), 'onboarding_sessions', ['user_email'], unique=False)
    op.create_index(op.f('ix_onboarding_sessions_status'), 'onboarding_sessions', ['status'], unique=False)
    op.create_index(op.f('ix_onboarding_sessions_expires_at'), 'onboarding_sessions', ['expires_at'], unique=False)
    op.create_index('idx_onboarding_sessions_email_status', 'onboarding_sessions', ['user_email', 'status'], unique=False)
    op.create_index('idx_onboarding_sessions_last_activity', 'onboarding_sessions', ['last_activity_at'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_onboarding_sessions_last_activity', table_name='onboarding_sessions')
    op.drop_index('idx_onboarding_sessions_email_status', table_name='onboarding_sessions')
    op.drop_index(op.f('ix_onboarding_sessions_expires_at'), table_name='onboarding_sessions')
    op.drop_index(op.f('ix_onboarding_sessions_status'), table_name='onboarding_sessions')
    op.drop_index(op.f('ix_onboarding_sessions_user_email'), table_name='onboarding_sessions')
    op.drop_table('onboarding_sessions')
