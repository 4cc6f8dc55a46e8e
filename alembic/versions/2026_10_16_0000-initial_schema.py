"""initial schema

Revision ID: 2026_10_16_0000
Revises:
Create Date: 2026-10-16 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_16_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Users
    # ========================================================================
    op.create_table(
        'app_users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('privy_user_id', sa.Text(), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('wallet_address', sa.Text(), nullable=True),
        sa.Column('wallet_provider', sa.Text(), nullable=True),
        sa.Column('wallet_secret_key_encrypted', sa.Text(), nullable=True),
        sa.Column('deposit_wallet_address', sa.Text(), nullable=True),
        sa.Column('deposit_wallet_secret_key_encrypted', sa.Text(), nullable=True),
        sa.Column('sandbox_id', sa.Text(), nullable=True),
        *_timestamps(),

        sa.UniqueConstraint('privy_user_id', name='app_users_privy_user_id_key'),
        sa.UniqueConstraint('wallet_address', name='app_users_wallet_address_key'),
        sa.UniqueConstraint('deposit_wallet_address', name='app_users_deposit_wallet_address_key'),
    )
    op.create_index('idx_app_users_sandbox_id', 'app_users', ['sandbox_id'])

    # ========================================================================
    # Shared sandboxes
    # ========================================================================
    op.create_table(
        'sandboxes',
        sa.Column('sandbox_id', sa.Text(), primary_key=True),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('active_users', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.Column('last_assigned_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('active_users >= 0', name='ck_sandbox_active_users_non_negative'),
    )
    op.create_index('idx_sandboxes_active', 'sandboxes', ['active_users', 'capacity'])

    op.create_table(
        'user_sandboxes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('app_user_id', UUID(as_uuid=True), sa.ForeignKey('app_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sandbox_id', sa.Text(), sa.ForeignKey('sandboxes.sandbox_id', ondelete='CASCADE'), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('app_user_id', name='user_sandboxes_app_user_id_key'),
    )
    op.create_index('idx_user_sandboxes_sandbox', 'user_sandboxes', ['sandbox_id'])

    # ========================================================================
    # Projects and transcripts
    # ========================================================================
    op.create_table(
        'projects',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('sandbox_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('preview_url', sa.Text(), nullable=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('app_users.id', ondelete='CASCADE'), nullable=True),
        sa.Column('project_path', sa.Text(), nullable=True),
        sa.Column('dev_port', sa.Integer(), nullable=True),
        sa.Column('status', sa.Text(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.UniqueConstraint('user_id', 'name', name='uniq_user_project_name'),
    )
    op.create_index('idx_projects_sandbox_id', 'projects', ['sandbox_id'])
    op.create_index('idx_projects_user_id', 'projects', ['user_id'])
    op.create_index('idx_projects_updated_at', 'projects', ['updated_at'])
    op.create_index(
        'uniq_sandbox_dev_port', 'projects', ['sandbox_id', 'dev_port'],
        unique=True, postgresql_where=sa.text('dev_port IS NOT NULL'),
    )

    op.create_table(
        'project_messages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sandbox_id', sa.Text(), nullable=False),
        sa.Column('message_type', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('input', JSONB(), nullable=True),
        sa.Column('result', JSONB(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('preview_url', sa.Text(), nullable=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('image_prompt', sa.Text(), nullable=True),
        sa.Column('sequence_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('project_id', 'sequence_number', name='uq_project_message_sequence'),
    )
    op.create_index('idx_project_messages_sandbox_id', 'project_messages', ['sandbox_id'])

    # ========================================================================
    # Payments
    # ========================================================================
    op.create_table(
        'user_credits',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('app_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', name='user_credits_user_id_key'),
        sa.CheckConstraint('credits >= 0', name='ck_credits_non_negative'),
    )

    op.create_table(
        'payment_intents',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('app_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('project_id', UUID(as_uuid=True), nullable=True),
        sa.Column('amount_usd_cents', sa.Integer(), nullable=False),
        sa.Column('amount_sol_lamports', sa.BigInteger(), nullable=True),
        sa.Column('amount_token_ui', sa.Numeric(38, 9), nullable=True),
        sa.Column('credits_to_grant', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('token_symbol', sa.String(16), nullable=False, server_default='SOL'),
        sa.Column('token_mint', sa.Text(), nullable=True),
        sa.Column('deposit_wallet', sa.Text(), nullable=False),
        sa.Column('cluster', sa.String(20), nullable=False, server_default='mainnet-beta'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'expired', 'failed')",
            name='ck_payment_intent_status',
        ),
        sa.CheckConstraint('amount_usd_cents >= 0', name='ck_payment_intent_amount_non_negative'),
    )
    op.create_index('idx_payment_intents_user', 'payment_intents', ['user_id'])
    op.create_index('idx_payment_intents_project', 'payment_intents', ['project_id'])
    op.create_index(
        'idx_payment_intents_deposit_wallet_pending', 'payment_intents', ['deposit_wallet'],
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'payment_settlements',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('intent_id', UUID(as_uuid=True), sa.ForeignKey('payment_intents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('signature', sa.Text(), nullable=False),
        sa.Column('slot', sa.BigInteger(), nullable=True),
        sa.Column('amount_raw', sa.Numeric(38, 0), nullable=True),
        sa.Column('amount_ui', sa.Numeric(38, 9), nullable=True),
        sa.Column('token_symbol', sa.String(16), nullable=False),
        sa.Column('token_mint', sa.Text(), nullable=True),
        sa.Column('payer_wallet', sa.Text(), nullable=True),
        sa.Column('deposit_wallet', sa.Text(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # One settlement per on-chain transaction
        sa.UniqueConstraint('signature', name='payment_settlements_signature_key'),
    )
    op.create_index('idx_payment_settlements_intent', 'payment_settlements', ['intent_id'])

    op.create_table(
        'user_token_balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('app_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_mint', sa.Text(), nullable=False),
        sa.Column('balance_ui', sa.Numeric(38, 9), nullable=False, server_default='0'),
        sa.Column('balance_sol_equivalent', sa.Numeric(38, 9), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', 'token_mint', name='uq_user_token_balance'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('user_token_balances')
    op.drop_table('payment_settlements')
    op.drop_table('payment_intents')
    op.drop_table('user_credits')
    op.drop_table('project_messages')
    op.drop_table('projects')
    op.drop_table('user_sandboxes')
    op.drop_table('sandboxes')
    op.drop_table('app_users')
