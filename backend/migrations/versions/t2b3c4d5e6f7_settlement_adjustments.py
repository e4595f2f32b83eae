"""settlement adjustments

Revision ID: t2b3c4d5e6f7
Revises: s1a2b3c4d5e6
Create Date: 2026-10-19 12:00:00.000000

Adds settlement_adjustments: refunds booked against settlements that were
already CONFIRMED or COMPLETED, deducted from a later payout.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 't2b3c4d5e6f7'
down_revision = 's1a2b3c4d5e6'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'settlement_adjustments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('settlement_id', sa.Integer(), nullable=False),
        sa.Column('refund_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('adjustment_date', sa.Date(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['settlement_id'], ['settlements.id']),
        sa.ForeignKeyConstraint(['refund_id'], ['refunds.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('refund_id', name='uq_settlement_adjustments_refund'),
        sa.CheckConstraint('amount > 0', name='ck_settlement_adjustments_amount_positive'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_settlement_adjustments_settlement_id', 'settlement_adjustments', ['settlement_id'])
    op.create_index('ix_settlement_adjustments_date_status', 'settlement_adjustments',
                    ['adjustment_date', 'status'])


def downgrade():
    op.drop_index('ix_settlement_adjustments_date_status', table_name='settlement_adjustments')
    op.drop_index('ix_settlement_adjustments_settlement_id', table_name='settlement_adjustments')
    op.drop_table('settlement_adjustments')
