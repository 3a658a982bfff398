"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create order_assignments table
    op.create_table(
        'order_assignments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('customer_id', sa.String(100), nullable=False),
        sa.Column('restaurant_id', sa.String(100), nullable=False),
        sa.Column('restaurant_latitude', sa.Float(), nullable=False),
        sa.Column('restaurant_longitude', sa.Float(), nullable=False),
        sa.Column('restaurant_address', sa.String(500), nullable=True),
        sa.Column('customer_latitude', sa.Float(), nullable=False),
        sa.Column('customer_longitude', sa.Float(), nullable=False),
        sa.Column('customer_address', sa.String(500), nullable=True),
        sa.Column('assigned_to', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('timeout_at', sa.DateTime(), nullable=True),
        sa.Column('current_attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_assignment_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('assignment_radius_km', sa.Float(), nullable=False, server_default='5'),
        sa.Column('order_total_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('order_item_count', sa.Integer(), nullable=False),
        sa.Column('special_instructions', sa.Text(), nullable=True),
        sa.Column('estimated_preparation_minutes', sa.Integer(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('accepted_at', sa.DateTime(), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column('last_assignment_check', sa.DateTime(), nullable=True),
        sa.Column('ranked_candidates', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
        sa.CheckConstraint(
            "status IN ('pending', 'assigned', 'accepted', 'in_transit', 'delivered', 'cancelled', 'failed')",
            name='ck_order_assignments_status',
        ),
    )
    op.create_index('ix_order_assignments_order_id', 'order_assignments', ['order_id'])
    op.create_index('ix_order_assignments_customer_id', 'order_assignments', ['customer_id'])
    op.create_index('ix_order_assignments_restaurant_id', 'order_assignments', ['restaurant_id'])
    op.create_index('ix_order_assignments_assigned_to', 'order_assignments', ['assigned_to'])
    op.create_index('ix_order_assignments_status', 'order_assignments', ['status'])
    op.create_index('ix_order_assignments_timeout_at', 'order_assignments', ['timeout_at'])
    # Sweeper scan: status = 'assigned' AND timeout_at <= now
    op.create_index('ix_order_assignments_status_timeout', 'order_assignments', ['status', 'timeout_at'])
    op.create_index('ix_order_assignments_assigned_to_status', 'order_assignments', ['assigned_to', 'status'])

    # Create assignment_history table
    op.create_table(
        'assignment_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('assignment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('partner_id', sa.String(100), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='assigned'),
        sa.Column('responded_at', sa.DateTime(), nullable=True),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['assignment_id'], ['order_assignments.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('assignment_id', 'attempt', name='uq_assignment_history_attempt'),
        sa.CheckConstraint(
            "outcome IN ('assigned', 'accepted', 'rejected', 'timeout')",
            name='ck_assignment_history_outcome',
        ),
    )
    op.create_index('ix_assignment_history_assignment_id', 'assignment_history', ['assignment_id'])
    op.create_index('ix_assignment_history_partner_id', 'assignment_history', ['partner_id'])

    # Create partner_capacity table
    op.create_table(
        'partner_capacity',
        sa.Column('partner_id', sa.String(100), nullable=False),
        sa.Column('max_concurrent_orders', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('current_load', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active_order_id', sa.String(100), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('partner_id'),
        sa.CheckConstraint('current_load >= 0', name='ck_partner_capacity_load_non_negative'),
    )

    # Create partner_order_claims table
    op.create_table(
        'partner_order_claims',
        sa.Column('partner_id', sa.String(100), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('partner_id', 'order_id', 'attempt'),
        sa.ForeignKeyConstraint(['partner_id'], ['partner_capacity.partner_id'], ondelete='CASCADE'),
    )
    op.create_index('ix_partner_order_claims_order_id', 'partner_order_claims', ['order_id'])


def downgrade() -> None:
    op.drop_table('partner_order_claims')
    op.drop_table('partner_capacity')
    op.drop_table('assignment_history')
    op.drop_table('order_assignments')
