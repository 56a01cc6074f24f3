"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create idempotency_marks table
    # ========================================================================
    op.create_table(
        'idempotency_marks',
        sa.Column('notification_id', sa.String(255), primary_key=True),
        sa.Column('state', sa.String(20), nullable=False, server_default='processing'),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint("state IN ('processing', 'completed')", name='ck_idempotency_state'),
    )
    op.create_index('idx_idempotency_marks_state_claimed', 'idempotency_marks', ['state', 'claimed_at'])

    # ========================================================================
    # Create entitlements table
    # ========================================================================
    op.create_table(
        'entitlements',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('product_type', sa.String(50), nullable=False),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('original_transaction_id', sa.String(255), nullable=False),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('pending_change', sa.String(20), nullable=True),

        sa.UniqueConstraint('user_id', 'product_id', name='uq_entitlement_user_product'),
        sa.CheckConstraint("state IN ('granted', 'revoked', 'expired')", name='ck_entitlement_state'),
        sa.CheckConstraint(
            "pending_change IS NULL OR pending_change IN ('unlock', 'revoke')",
            name='ck_entitlement_pending_change',
        ),
        sa.CheckConstraint('version > 0', name='ck_entitlement_version_positive'),
    )
    op.create_index('idx_entitlements_user_id', 'entitlements', ['user_id'])
    op.create_index('idx_entitlements_original_tx', 'entitlements', ['original_transaction_id'])

    # ========================================================================
    # Create entitlement_changes table (append-only change log)
    # ========================================================================
    op.create_table(
        'entitlement_changes',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('change_type', sa.String(20), nullable=False),
        sa.Column('content_id', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("change_type IN ('unlock', 'revoke')", name='ck_change_type'),
    )
    op.create_index(
        'idx_entitlement_changes_user_changed', 'entitlement_changes', ['user_id', 'changed_at', 'id']
    )

    # ========================================================================
    # Create crm_sync_jobs table (durable retry queue)
    # ========================================================================
    op.create_table(
        'crm_sync_jobs',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('entitlement_status', sa.String(20), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('state', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("state IN ('pending', 'dead')", name='ck_crm_job_state'),
        sa.CheckConstraint('attempts >= 0', name='ck_crm_job_attempts_non_negative'),
    )
    op.create_index('idx_crm_sync_jobs_due', 'crm_sync_jobs', ['state', 'next_attempt_at'])

    # ========================================================================
    # Create device_tokens table
    # ========================================================================
    op.create_table(
        'device_tokens',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('device_token', sa.String(512), nullable=False),
        sa.Column('platform', sa.String(20), nullable=False, server_default='ios'),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', 'device_token', name='uq_device_token_user'),
    )
    op.create_index('idx_device_tokens_user_id', 'device_tokens', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('device_tokens')
    op.drop_table('crm_sync_jobs')
    op.drop_table('entitlement_changes')
    op.drop_table('entitlements')
    op.drop_table('idempotency_marks')
