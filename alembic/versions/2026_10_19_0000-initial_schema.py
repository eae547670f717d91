"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('registration_token', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('free_token', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('subscription_token', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('addons_token', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('registration_token >= 0', name='ck_registration_token_non_negative'),
        sa.CheckConstraint('free_token >= 0', name='ck_free_token_non_negative'),
        sa.CheckConstraint('subscription_token >= 0', name='ck_subscription_token_non_negative'),
        sa.CheckConstraint('addons_token >= 0', name='ck_addons_token_non_negative'),
        sa.CheckConstraint("role IN ('user', 'admin', 'super_admin')", name='ck_users_role'),
    )
    op.create_index('idx_users_role', 'users', ['role'])

    # ========================================================================
    # Create plans and subscriptions tables
    # ========================================================================
    op.create_table(
        'plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('interval', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('tokens_per_cycle', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('premium_models_access', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price >= 0', name='ck_plan_price_non_negative'),
        sa.CheckConstraint("interval IN ('monthly', 'yearly')", name='ck_plan_interval'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "status IN ('active', 'trialing', 'canceled', 'past_due', 'unpaid')",
            name='ck_subscription_status',
        ),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])

    # ========================================================================
    # Create purchases table
    # ========================================================================
    op.create_table(
        'purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=False, unique=True),
        sa.Column('price_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('tokens', sa.BigInteger(), nullable=False),
        sa.Column('tokens_awarded', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('type', sa.String(20), nullable=False, server_default='purchase'),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('tokens > 0', name='ck_purchase_tokens_positive'),
        sa.CheckConstraint('amount >= 0', name='ck_purchase_amount_non_negative'),
    )
    op.create_index('ix_purchases_user_id', 'purchases', ['user_id'])
    op.create_index('idx_purchases_user_created', 'purchases', ['user_id', 'created_at'])
    op.create_index('idx_purchases_type', 'purchases', ['type'])

    # ========================================================================
    # Create token_usages table (immutable usage ledger)
    # ========================================================================
    op.create_table(
        'token_usages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('feature', sa.String(255), nullable=False),
        sa.Column('model', sa.String(255), nullable=True),
        sa.Column('analysis_type', sa.String(50), nullable=True),
        sa.Column('token_type', sa.String(30), nullable=False),
        sa.Column('input_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False),
        sa.Column('total_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('tokens_used > 0', name='ck_usage_tokens_used_positive'),
        sa.CheckConstraint('input_tokens >= 0', name='ck_usage_input_non_negative'),
        sa.CheckConstraint('output_tokens >= 0', name='ck_usage_output_non_negative'),
    )
    op.create_index('ix_token_usages_user_id', 'token_usages', ['user_id'])
    op.create_index('idx_token_usages_user_timestamp', 'token_usages', ['user_id', 'timestamp'])
    op.create_index('idx_token_usages_feature', 'token_usages', ['feature'])
    op.create_index('idx_token_usages_model', 'token_usages', ['model'])

    # ========================================================================
    # Create token_histories table (running balance audit trail)
    # ========================================================================
    op.create_table(
        'token_histories',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('action', sa.String(10), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount > 0', name='ck_token_history_amount_positive'),
        sa.CheckConstraint("action IN ('credited', 'debited')", name='ck_token_history_action'),
        sa.CheckConstraint('balance_after >= 0', name='ck_token_history_balance_non_negative'),
    )
    op.create_index('ix_token_histories_user_id', 'token_histories', ['user_id'])

    # ========================================================================
    # Create manual_token_additions table (admin top-up audit)
    # ========================================================================
    op.create_table(
        'manual_token_additions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('admin_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('admin_name', sa.String(255), nullable=False),
        sa.Column('token_amount', sa.BigInteger(), nullable=False),
        sa.Column('token_type', sa.String(30), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('purchase_id', UUID(as_uuid=True), sa.ForeignKey('purchases.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('token_amount > 0', name='ck_manual_addition_amount_positive'),
        sa.CheckConstraint(
            "token_type IN ('subscription_token', 'addons_token')",
            name='ck_manual_addition_token_type',
        ),
    )
    op.create_index('ix_manual_token_additions_user_id', 'manual_token_additions', ['user_id'])
    op.create_index('ix_manual_token_additions_admin_id', 'manual_token_additions', ['admin_id'])
    op.create_index('idx_manual_additions_created_at', 'manual_token_additions', ['created_at'])

    # ========================================================================
    # Create histories, chat_messages and knowledge_bases tables
    # ========================================================================
    op.create_table(
        'histories',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('model', sa.String(255), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('chart_urls', ARRAY(sa.Text()), nullable=False, server_default='{}'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_histories_user_id', 'histories', ['user_id'])
    op.create_index('idx_histories_user_type', 'histories', ['user_id', 'type'])

    op.create_table(
        'chat_messages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('history_id', UUID(as_uuid=True), sa.ForeignKey('histories.id', ondelete='SET NULL'), nullable=True),
        sa.Column('sender', sa.String(10), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("sender IN ('user', 'ai')", name='ck_chat_message_sender'),
    )
    op.create_index('ix_chat_messages_user_id', 'chat_messages', ['user_id'])

    op.create_table(
        'knowledge_bases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('source', sa.String(255), nullable=True),
        sa.Column('topic', sa.String(255), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('skill_level', sa.String(50), nullable=True),
        sa.Column('related_keywords', ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('knowledge_bases')
    op.drop_table('chat_messages')
    op.drop_table('histories')
    op.drop_table('manual_token_additions')
    op.drop_table('token_histories')
    op.drop_table('token_usages')
    op.drop_table('purchases')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('users')
