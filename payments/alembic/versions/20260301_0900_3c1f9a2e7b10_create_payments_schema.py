"""create_payments_schema

Revision ID: 3c1f9a2e7b10
Revises:
Create Date: 2026-03-01 09:00:12.118204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1f9a2e7b10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True) -> list:
    columns = [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    # Webhook dedup gate: one row per webhook-id
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('webhook_id', sa.TEXT(), nullable=False),
        sa.Column('kind', sa.TEXT(), nullable=False),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('entity_id', sa.TEXT(), nullable=True),
        sa.Column('verified', sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column('raw_payload', sa.JSON(), nullable=False),
        sa.Column('payload_hash', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='processing'),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('applied_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint('webhook_id', name='uq_webhook_events_webhook_id'),
        sa.CheckConstraint("status IN ('processing', 'done', 'failed')", name='ck_webhook_events_status'),
    )
    op.create_index('idx_webhook_events_status', 'webhook_events', ['status'])
    op.create_index('idx_webhook_events_received', 'webhook_events', ['received_at'])

    op.create_table(
        'settlements',
        sa.Column('settlement_id', sa.TEXT(), primary_key=True),
        sa.Column('partner_id', sa.TEXT(), nullable=False),
        sa.Column('payment_id', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('order_amount', sa.BIGINT(), nullable=True),
        sa.Column('settlement_amount', sa.BIGINT(), nullable=True),
        sa.Column('currency', sa.TEXT(), nullable=False, server_default='KRW'),
        sa.Column('settlement_date', sa.TEXT(), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('source', sa.TEXT(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("source IN ('webhook', 'sync')", name='ck_settlements_source'),
    )
    op.create_index('idx_settlements_partner', 'settlements', ['partner_id'])
    op.create_index('idx_settlements_payment', 'settlements', ['payment_id'])
    op.create_index('idx_settlements_status', 'settlements', ['status'])

    op.create_table(
        'payouts',
        sa.Column('payout_id', sa.TEXT(), primary_key=True),
        sa.Column('partner_id', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False, server_default='KRW'),
        sa.Column('scheduled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('payout_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.TEXT(), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('source', sa.TEXT(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("source IN ('webhook', 'sync')", name='ck_payouts_source'),
    )
    op.create_index('idx_payouts_partner', 'payouts', ['partner_id'])
    op.create_index('idx_payouts_status', 'payouts', ['status'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('academy_id', sa.TEXT(), nullable=False),
        sa.Column('plan_tier', sa.TEXT(), nullable=False, server_default='free'),
        sa.Column('billing_cycle', sa.TEXT(), nullable=False, server_default='monthly'),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='free'),
        sa.Column('amount', sa.BIGINT(), nullable=False, server_default='0'),
        sa.Column('billing_key', sa.TEXT(), nullable=True),
        sa.Column('current_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('next_payment_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_payment_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('pending_tier', sa.TEXT(), nullable=True),
        sa.Column('failed_attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('suspended_reason', sa.TEXT(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('academy_id', name='uq_subscriptions_academy'),
        sa.CheckConstraint(
            "status IN ('free', 'active', 'past_due', 'suspended')", name='ck_subscriptions_status'
        ),
        sa.CheckConstraint("billing_cycle IN ('monthly', 'yearly')", name='ck_subscriptions_cycle'),
        sa.CheckConstraint('amount >= 0', name='ck_subscriptions_amount_nonneg'),
    )
    op.create_index('idx_subscriptions_due', 'subscriptions', ['status', 'auto_renew', 'next_payment_at'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('academy_id', sa.TEXT(), nullable=False),
        sa.Column('subscription_id', sa.BIGINT(), nullable=True),
        sa.Column('payment_id', sa.TEXT(), nullable=True),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False, server_default='KRW'),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='pending'),
        sa.Column('description', sa.TEXT(), nullable=True),
        sa.Column('plan_tier', sa.TEXT(), nullable=True),
        sa.Column('billing_cycle', sa.TEXT(), nullable=True),
        sa.Column('billing_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('billing_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('attempt', sa.INTEGER(), nullable=False, server_default='1'),
        sa.Column('due_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('failed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.TEXT(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('payment_id', name='uq_invoices_payment_id'),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded')", name='ck_invoices_status'
        ),
        sa.CheckConstraint('amount >= 0', name='ck_invoices_amount_nonneg'),
    )
    op.create_index('idx_invoices_academy', 'invoices', ['academy_id'])
    op.create_index('idx_invoices_status', 'invoices', ['status'])

    op.create_table(
        'usage_snapshots',
        sa.Column('academy_id', sa.TEXT(), primary_key=True),
        sa.Column('student_count', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('teacher_count', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('classroom_count', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('storage_gb', sa.FLOAT(), nullable=False, server_default='0'),
        sa.Column('api_calls_month', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('sms_sent_month', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('emails_sent_month', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('calculated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'subscription_audit_logs',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('academy_id', sa.TEXT(), nullable=False),
        sa.Column('actor', sa.TEXT(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index('idx_subscription_audit_academy', 'subscription_audit_logs', ['academy_id'])
    op.create_index('idx_subscription_audit_created', 'subscription_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_index('idx_subscription_audit_created', table_name='subscription_audit_logs')
    op.drop_index('idx_subscription_audit_academy', table_name='subscription_audit_logs')
    op.drop_table('subscription_audit_logs')
    op.drop_table('usage_snapshots')
    op.drop_index('idx_invoices_status', table_name='invoices')
    op.drop_index('idx_invoices_academy', table_name='invoices')
    op.drop_table('invoices')
    op.drop_index('idx_subscriptions_due', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('idx_payouts_status', table_name='payouts')
    op.drop_index('idx_payouts_partner', table_name='payouts')
    op.drop_table('payouts')
    op.drop_index('idx_settlements_status', table_name='settlements')
    op.drop_index('idx_settlements_payment', table_name='settlements')
    op.drop_index('idx_settlements_partner', table_name='settlements')
    op.drop_table('settlements')
    op.drop_index('idx_webhook_events_received', table_name='webhook_events')
    op.drop_index('idx_webhook_events_status', table_name='webhook_events')
    op.drop_table('webhook_events')
