"""settlement engine schema

Revision ID: 9c1e4b7a2d30
Revises:
Create Date: 2026-10-18 09:12:44.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '9c1e4b7a2d30'
down_revision = None
branch_labels = None
depends_on = None


def _indexes(table, *columns, unique=()):
    with op.batch_alter_table(table, schema=None) as batch_op:
        for col in columns:
            batch_op.create_index(batch_op.f(f'ix_{table}_{col}'), [col], unique=col in unique)


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='member'),
        sa.Column('pin_hash', sa.String(length=255), nullable=True),
        sa.Column('wallet_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('escrow_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('trust_score', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('wallet_balance >= 0', name='ck_users_wallet_non_negative'),
        sa.CheckConstraint('escrow_balance >= 0', name='ck_users_escrow_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('users', 'email', 'phone', unique=('email', 'phone'))

    op.create_table(
        'rosca_groups',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('contribution_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'group_members',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('payout_position', sa.Integer(), nullable=True),
        sa.Column('has_contributed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('contribution_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('group_id', 'user_id', name='uq_group_members_group_user')
    )
    _indexes('group_members', 'group_id', 'user_id')

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('gross_amount', sa.Integer(), nullable=False),
        sa.Column('net_amount', sa.Integer(), nullable=False),
        sa.Column('fee_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payout_type', sa.String(length=16), nullable=True),
        sa.Column('scheduled_date', sa.Date(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('external_reference', sa.String(length=64), nullable=True),
        sa.Column('gateway_ref_id', sa.String(length=128), nullable=True),
        sa.Column('failure_reason', sa.String(length=240), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.ForeignKeyConstraint(['recipient_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('group_id', 'cycle_number', name='uq_payouts_group_cycle')
    )
    _indexes('payouts', 'group_id', 'recipient_id', 'status', 'external_reference', unique=('external_reference',))

    op.create_table(
        'payout_schedule',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payout_id', sa.Integer(), nullable=True),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('scheduled_date', sa.Date(), nullable=False),
        sa.Column('payout_time', sa.Time(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('charge_id', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.String(length=240), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], ),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('payout_schedule', 'payout_id', 'group_id', 'user_id', 'scheduled_date', 'status', 'charge_id', unique=('charge_id',))

    op.create_table(
        'contributions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('charge_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_ref_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('contributions', 'group_id', 'user_id', 'charge_id', unique=('charge_id',))

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.Column('payout_id', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('charge_id', sa.String(length=64), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('transactions', 'user_id', 'group_id', 'payout_id', 'charge_id')

    op.create_table(
        'revenue_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payout_id', sa.Integer(), nullable=True),
        sa.Column('schedule_entry_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.Column('revenue_type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('original_payout_amount', sa.Integer(), nullable=False),
        sa.Column('net_payout', sa.Integer(), nullable=False),
        sa.Column('fee_percentage', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('charge_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], ),
        sa.ForeignKeyConstraint(['schedule_entry_id'], ['payout_schedule.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('revenue_transactions', 'payout_id', 'schedule_entry_id', 'user_id')

    op.create_table(
        'reserve_wallets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_reserve_wallets_non_negative'),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('reserve_wallets', 'group_id', unique=('group_id',))

    op.create_table(
        'reserve_wallet_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=240), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['group_id'], ['rosca_groups.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('reserve_wallet_entries', 'group_id')

    op.create_table(
        'mobile_money_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=True),
        sa.Column('phone_number', sa.String(length=32), nullable=True),
        sa.Column('account_name', sa.String(length=120), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('mobile_money_accounts', 'user_id')

    op.create_table(
        'bank_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('bank_name', sa.String(length=80), nullable=True),
        sa.Column('account_number', sa.String(length=32), nullable=True),
        sa.Column('account_name', sa.String(length=120), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('bank_accounts', 'user_id')

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=160), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('meta', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('notifications', 'user_id')

    op.create_table(
        'trust_score_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('change_amount', sa.Integer(), nullable=False),
        sa.Column('score_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=240), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('trust_score_events', 'user_id')

    op.create_table(
        'settlement_intents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('charge_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('payout_id', sa.Integer(), nullable=True),
        sa.Column('schedule_entry_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False, server_default='dispatched'),
        sa.Column('note', sa.String(length=240), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], ),
        sa.ForeignKeyConstraint(['schedule_entry_id'], ['payout_schedule.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('settlement_intents', 'charge_id', 'user_id', 'payout_id', 'schedule_entry_id', unique=('charge_id',))

    op.create_table(
        'manual_interventions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payout_id', sa.Integer(), nullable=False),
        sa.Column('opened_by', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('note', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('manual_interventions', 'payout_id')

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('target_type', sa.String(length=64), nullable=True),
        sa.Column('target_id', sa.Integer(), nullable=True),
        sa.Column('meta', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    _indexes('audit_logs', 'action')

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_id', sa.String(length=128), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=True),
        sa.Column('charge_id', sa.String(length=64), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deliveries', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id')
    )
    _indexes('webhook_events', 'charge_id')


def downgrade():
    for table in (
        'webhook_events',
        'audit_logs',
        'manual_interventions',
        'settlement_intents',
        'trust_score_events',
        'notifications',
        'bank_accounts',
        'mobile_money_accounts',
        'reserve_wallet_entries',
        'reserve_wallets',
        'revenue_transactions',
        'transactions',
        'contributions',
        'payout_schedule',
        'payouts',
        'group_members',
        'rosca_groups',
        'users',
    ):
        op.drop_table(table)
