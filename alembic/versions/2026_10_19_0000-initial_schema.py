"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create ledger, usage and catalog tables."""

    # ========================================================================
    # Create balances table
    # ========================================================================
    op.create_table(
        'balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_earned', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_spent', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_balance_non_negative'),
        sa.CheckConstraint('total_earned >= 0', name='ck_total_earned_non_negative'),
        sa.CheckConstraint('total_spent >= 0', name='ck_total_spent_non_negative'),
        sa.CheckConstraint('balance = total_earned - total_spent', name='ck_balance_ledger_consistency'),
        sa.UniqueConstraint('user_id', name='uq_balances_user_id'),
    )

    op.create_index('idx_balances_updated_at', 'balances', ['updated_at'])

    # ========================================================================
    # Create transactions table (append-only)
    # ========================================================================
    op.create_table(
        'transactions',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=False), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('transaction_type', sa.String(32), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('reference_type', sa.String(32), nullable=True),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount <> 0', name='ck_transaction_amount_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_transaction_balance_after_non_negative'),
        sa.CheckConstraint(
            "(transaction_type = 'spend' AND amount < 0) "
            "OR (transaction_type <> 'spend' AND amount > 0)",
            name='ck_transaction_sign_matches_type',
        ),
        sa.CheckConstraint(
            "transaction_type IN ('earn', 'spend', 'purchase', 'subscription_grant', 'admin_grant')",
            name='ck_transaction_type',
        ),
        sa.CheckConstraint(
            "reference_type IS NULL OR reference_type IN ('generation_image', 'generation_video', "
            "'package_purchase', 'subscription_grant', 'admin_adjustment')",
            name='ck_transaction_reference_type',
        ),
        sa.CheckConstraint(
            '(reference_type IS NULL) = (reference_id IS NULL)',
            name='ck_transaction_reference_complete',
        ),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_transaction_idempotency'),
    )

    # Indexes for transactions
    op.create_index('idx_transactions_user_id_id', 'transactions', ['user_id', 'id'])
    op.create_index('idx_transactions_created_at', 'transactions', ['created_at'])
    op.create_index(
        'idx_transactions_reference',
        'transactions',
        ['reference_type', 'reference_id'],
        postgresql_where=sa.text('reference_id IS NOT NULL'),
    )

    # Block edits and deletes of ledger rows at the database level
    op.execute("""
        CREATE OR REPLACE FUNCTION transactions_append_only()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'transactions are append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_transactions_append_only
        BEFORE UPDATE OR DELETE ON transactions
        FOR EACH ROW EXECUTE FUNCTION transactions_append_only();
    """)

    # ========================================================================
    # Create monthly_usage table
    # ========================================================================
    op.create_table(
        'monthly_usage',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('year_month', sa.String(7), nullable=False),
        sa.Column('images_generated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('videos_generated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('coins_granted', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('images_generated >= 0', name='ck_usage_images_non_negative'),
        sa.CheckConstraint('videos_generated >= 0', name='ck_usage_videos_non_negative'),
        sa.CheckConstraint('coins_granted >= 0', name='ck_usage_coins_non_negative'),
        sa.CheckConstraint("year_month ~ '^[0-9]{4}-(0[1-9]|1[0-2])$'", name='ck_usage_year_month_format'),
        sa.UniqueConstraint('user_id', 'year_month', name='uq_monthly_usage_user_month'),
    )

    # ========================================================================
    # Create packages table (read-only catalog)
    # ========================================================================
    op.create_table(
        'packages',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('coins_amount', sa.Integer(), nullable=False),
        sa.Column('bonus_coins', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_usd', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('coins_amount > 0', name='ck_package_coins_positive'),
        sa.CheckConstraint('bonus_coins >= 0', name='ck_package_bonus_non_negative'),
        sa.CheckConstraint('price_usd >= 0', name='ck_package_price_non_negative'),
    )

    op.create_index('idx_packages_active_sort', 'packages', ['is_active', 'sort_order'])

    # ========================================================================
    # Create settings table (runtime key/value configuration)
    # ========================================================================
    op.create_table(
        'settings',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('setting_key', sa.String(100), nullable=False, unique=True),
        sa.Column('setting_value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # ========================================================================
    # Create api_configs table (per-API generation costs)
    # ========================================================================
    op.create_table(
        'api_configs',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('coins_per_image', sa.Integer(), nullable=True),
        sa.Column('coins_per_video', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('api_configs')
    op.drop_table('settings')
    op.drop_index('idx_packages_active_sort', table_name='packages')
    op.drop_table('packages')
    op.drop_table('monthly_usage')
    op.execute('DROP TRIGGER IF EXISTS trg_transactions_append_only ON transactions')
    op.execute('DROP FUNCTION IF EXISTS transactions_append_only()')
    op.drop_index('idx_transactions_reference', table_name='transactions')
    op.drop_index('idx_transactions_created_at', table_name='transactions')
    op.drop_index('idx_transactions_user_id_id', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('idx_balances_updated_at', table_name='balances')
    op.drop_table('balances')
