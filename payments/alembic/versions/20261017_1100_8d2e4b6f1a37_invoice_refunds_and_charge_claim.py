"""invoice_refunds_and_charge_claim

Revision ID: 8d2e4b6f1a37
Revises: 3c1f9a2e7b10
Create Date: 2026-10-17 11:00:41.502117

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8d2e4b6f1a37'
down_revision = '3c1f9a2e7b10'
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table('invoices') as batch_op:
        batch_op.add_column(sa.Column('refunded_amount', sa.BIGINT(), nullable=False, server_default='0'))
        batch_op.add_column(sa.Column('refunded_at', sa.TIMESTAMP(timezone=True), nullable=True))
        batch_op.add_column(sa.Column('refund_reason', sa.TEXT(), nullable=True))
        batch_op.drop_constraint('ck_invoices_status', type_='check')
        batch_op.create_check_constraint(
            'ck_invoices_status',
            "status IN ('pending', 'paid', 'failed', 'refunded', 'partially_refunded')",
        )

    # At most one in-flight charge per subscription
    op.create_index(
        'uq_invoices_pending_subscription',
        'invoices',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index('uq_invoices_pending_subscription', table_name='invoices')
    with op.batch_alter_table('invoices') as batch_op:
        batch_op.drop_constraint('ck_invoices_status', type_='check')
        batch_op.create_check_constraint(
            'ck_invoices_status', "status IN ('pending', 'paid', 'failed', 'refunded')"
        )
        batch_op.drop_column('refund_reason')
        batch_op.drop_column('refunded_at')
        batch_op.drop_column('refunded_amount')
