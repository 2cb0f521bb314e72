"""create_class_booking_and_credit_tables

Revision ID: c1a55e5b0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = 'c1a55e5b0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


template_scope = sa.Enum('facility', 'cohort', name='class_template_scope_enum')
session_status = sa.Enum('scheduled', 'cancelled', 'completed', name='class_session_status_enum')
booking_status = sa.Enum(
    'booked', 'waitlisted', 'cancelled', 'late_cancel', 'attended', 'no_show',
    name='class_booking_status_enum',
)
booking_source = sa.Enum('client', 'coach', 'admin', name='class_booking_source_enum')
credit_mode = sa.Enum('one_time_pack', 'monthly_topup', name='credit_mode_enum')
period_type = sa.Enum('month', name='credit_period_type_enum')
entry_type = sa.Enum('grant', 'consume', 'refund', 'expire', name='credit_ledger_entry_type_enum')
entry_reason = sa.Enum(
    'pack_purchase', 'topup_periodic', 'admin_adjustment',
    'booking_debit', 'booking_refund', 'period_expiry',
    name='credit_ledger_reason_enum',
)
submission_status = sa.Enum('pending', 'approved', 'rejected', name='credit_submission_status_enum')


def upgrade() -> None:
    """Upgrade schema - Add class booking and credit ledger tables."""

    op.create_table(
        'credit_products',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('owner_coach_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('credit_mode', credit_mode, nullable=False),
        sa.Column('credits_per_period', sa.Integer(), nullable=True),
        sa.Column('period_type', period_type, nullable=True),
        sa.Column('class_eligible', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('applies_to_class_types', sa.JSON(), nullable=True),
        sa.Column('purchase_restricted', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "credit_mode != 'monthly_topup' OR credits_per_period IS NOT NULL",
            name='ck_credit_product_periodic_amount',
        ),
        sa.CheckConstraint(
            'credits_per_period IS NULL OR credits_per_period >= 0',
            name='ck_credit_product_amount_non_negative',
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credit_products_owner_coach_id', 'credit_products', ['owner_coach_id'])

    op.create_table(
        'class_templates',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('owner_coach_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('class_type', sa.String(), nullable=False),
        sa.Column('scope', template_scope, nullable=False),
        sa.Column('cohort_id', UUID(as_uuid=True), nullable=True),
        sa.Column('location_label', sa.String(), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=True),
        sa.Column('waitlist_enabled', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('waitlist_capacity', sa.Integer(), nullable=True),
        sa.Column('booking_open_hours_before', sa.Integer(), nullable=True),
        sa.Column('booking_close_minutes_before', sa.Integer(), nullable=True),
        sa.Column('cancel_cutoff_minutes', sa.Integer(), nullable=True),
        sa.Column('late_cancel_refunds_credit', sa.Boolean(), nullable=True),
        sa.Column('credits_required', sa.Integer(), nullable=True),
        sa.Column('credit_product_id', UUID(as_uuid=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('capacity IS NULL OR capacity >= 0', name='ck_template_capacity'),
        sa.CheckConstraint(
            'credits_required IS NULL OR credits_required >= 0',
            name='ck_template_credits_required',
        ),
        sa.ForeignKeyConstraint(['credit_product_id'], ['credit_products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_class_templates_owner_coach_id', 'class_templates', ['owner_coach_id'])
    op.create_index('ix_class_templates_cohort_id', 'class_templates', ['cohort_id'])

    op.create_table(
        'class_sessions',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('template_id', UUID(as_uuid=True), nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('capacity_override', sa.Integer(), nullable=True),
        sa.Column('instructor_id', sa.String(), nullable=True),
        sa.Column('status', session_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('ends_at > starts_at', name='ck_session_ends_after_start'),
        sa.CheckConstraint(
            'capacity_override IS NULL OR capacity_override >= 0',
            name='ck_session_capacity_override',
        ),
        sa.ForeignKeyConstraint(['template_id'], ['class_templates.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_class_sessions_template_id', 'class_sessions', ['template_id'])
    op.create_index('ix_class_sessions_starts_at', 'class_sessions', ['starts_at'])
    op.create_index('ix_class_sessions_instructor_id', 'class_sessions', ['instructor_id'])

    op.create_table(
        'class_bookings',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('session_id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('status', booking_status, nullable=False),
        sa.Column('waitlist_position', sa.Integer(), nullable=True),
        sa.Column('source', booking_source, nullable=False),
        sa.Column('booked_by_user_id', sa.String(), nullable=True),
        sa.Column('credit_product_id', UUID(as_uuid=True), nullable=True),
        sa.Column('credits_charged', sa.Integer(), server_default='0', nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attendance_marked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(status = 'waitlisted' AND waitlist_position IS NOT NULL AND waitlist_position >= 1)"
            " OR (status != 'waitlisted' AND waitlist_position IS NULL)",
            name='ck_booking_waitlist_position',
        ),
        sa.CheckConstraint('credits_charged >= 0', name='ck_booking_credits_charged'),
        sa.ForeignKeyConstraint(['session_id'], ['class_sessions.id']),
        sa.ForeignKeyConstraint(['credit_product_id'], ['credit_products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_class_bookings_session_id', 'class_bookings', ['session_id'])
    op.create_index('ix_class_bookings_client_id', 'class_bookings', ['client_id'])
    op.create_index('ix_class_bookings_session_status', 'class_bookings', ['session_id', 'status'])
    op.create_index(
        'uq_class_bookings_active_client_session',
        'class_bookings',
        ['session_id', 'client_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('booked', 'waitlisted')"),
    )

    op.create_table(
        'client_credit_accounts',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('credit_product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('balance', sa.Integer(), server_default='0', nullable=False),
        sa.Column('lifetime_credits_granted', sa.Integer(), server_default='0', nullable=False),
        sa.Column('lifetime_credits_spent', sa.Integer(), server_default='0', nullable=False),
        sa.Column('lifetime_credits_expired', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_credit_account_balance_non_negative'),
        sa.ForeignKeyConstraint(['credit_product_id'], ['credit_products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id', 'credit_product_id', name='uq_credit_account_client_product')
    )
    op.create_index('ix_client_credit_accounts_client_id', 'client_credit_accounts', ['client_id'])
    op.create_index(
        'ix_client_credit_accounts_credit_product_id', 'client_credit_accounts', ['credit_product_id']
    )

    op.create_table(
        'client_credit_ledger',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('credit_product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('entry_type', entry_type, nullable=False),
        sa.Column('reason', entry_reason, nullable=False),
        sa.Column('delta_credits', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('booking_id', UUID(as_uuid=True), nullable=True),
        sa.Column('submission_id', UUID(as_uuid=True), nullable=True),
        sa.Column('cycle_run_id', UUID(as_uuid=True), nullable=True),
        sa.Column('period_key', sa.String(length=7), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('delta_credits != 0', name='ck_ledger_delta_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.CheckConstraint(
            'balance_after = balance_before + delta_credits',
            name='ck_ledger_balance_arithmetic',
        ),
        sa.ForeignKeyConstraint(['account_id'], ['client_credit_accounts.id']),
        sa.ForeignKeyConstraint(['credit_product_id'], ['credit_products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_client_credit_ledger_idempotency_key', 'client_credit_ledger', ['idempotency_key'], unique=True
    )
    op.create_index('ix_client_credit_ledger_account_id', 'client_credit_ledger', ['account_id'])
    op.create_index('ix_client_credit_ledger_client_id', 'client_credit_ledger', ['client_id'])
    op.create_index(
        'ix_client_credit_ledger_credit_product_id', 'client_credit_ledger', ['credit_product_id']
    )
    op.create_index('ix_client_credit_ledger_booking_id', 'client_credit_ledger', ['booking_id'])
    op.create_index('ix_client_credit_ledger_submission_id', 'client_credit_ledger', ['submission_id'])
    op.create_index('ix_client_credit_ledger_cycle_run_id', 'client_credit_ledger', ['cycle_run_id'])
    op.create_index(
        'ix_client_credit_ledger_account_period', 'client_credit_ledger', ['account_id', 'period_key']
    )

    op.create_table(
        'client_credit_subscriptions',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('credit_product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('credits_per_period', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('last_applied_period', sa.String(length=7), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('credits_per_period >= 0', name='ck_subscription_credits'),
        sa.ForeignKeyConstraint(['credit_product_id'], ['credit_products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_client_credit_subscriptions_client_id', 'client_credit_subscriptions', ['client_id']
    )
    op.create_index(
        'ix_client_credit_subscriptions_credit_product_id',
        'client_credit_subscriptions',
        ['credit_product_id'],
    )

    op.create_table(
        'credit_submissions',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('credit_product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('reference_code', sa.String(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('status', submission_status, nullable=False),
        sa.Column('reviewed_by', sa.String(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credits_applied', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['credit_product_id'], ['credit_products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credit_submissions_client_id', 'credit_submissions', ['client_id'])
    op.create_index(
        'ix_credit_submissions_credit_product_id', 'credit_submissions', ['credit_product_id']
    )
    op.create_index(
        'uq_credit_submissions_pending_reference',
        'credit_submissions',
        ['client_id', 'credit_product_id', 'reference_code'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'credit_cycle_runs',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_key', sa.String(length=7), nullable=False),
        sa.Column('products_processed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('grants_issued', sa.Integer(), server_default='0', nullable=False),
        sa.Column('credits_expired', sa.Integer(), server_default='0', nullable=False),
        sa.Column('failures', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credit_cycle_runs_period_key', 'credit_cycle_runs', ['period_key'])


def downgrade() -> None:
    """Downgrade schema - Drop class booking and credit ledger tables."""
    op.drop_table('credit_cycle_runs')
    op.drop_table('credit_submissions')
    op.drop_table('client_credit_subscriptions')
    op.drop_table('client_credit_ledger')
    op.drop_table('client_credit_accounts')
    op.drop_table('class_bookings')
    op.drop_table('class_sessions')
    op.drop_table('class_templates')
    op.drop_table('credit_products')

    bind = op.get_bind()
    for enum_type in (
        submission_status,
        entry_reason,
        entry_type,
        period_type,
        credit_mode,
        booking_source,
        booking_status,
        session_status,
        template_scope,
    ):
        enum_type.drop(bind, checkfirst=True)
