"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TRADE_STATUSES = (
    'PROPOSED', 'ACCEPTED', 'REJECTED', 'CANCELLED', 'COUNTERED',
    'ESCROW_FUNDED', 'COMPLETED_AWAITING_RATING', 'COMPLETED', 'DISPUTE_OPENED',
)
ESCROW_STATUSES = ('PENDING', 'FUNDED', 'RELEASED', 'REFUNDED', 'PARTIALLY_REFUNDED', 'DISPUTED')
NOTIFICATION_TYPES = (
    'TRADE_PROPOSED', 'TRADE_ACCEPTED', 'TRADE_REJECTED', 'TRADE_CANCELLED', 'COUNTER_OFFER',
    'ESCROW_FUNDED', 'ESCROW_RELEASED', 'ESCROW_REFUNDED', 'TRACKING_ADDED', 'ITEMS_VERIFIED',
    'TRADE_COMPLETED', 'RATING_RECEIVED', 'DISPUTE_OPENED', 'DISPUTE_RESPONDED', 'DISPUTE_RESOLVED',
)

ENUM_TYPES = (
    'tradestatus', 'tradeside', 'escrowstatus', 'disputetype',
    'disputestatus', 'disputeresolution', 'notificationtype',
)


def upgrade() -> None:
    trade_status = sa.Enum(*TRADE_STATUSES, name='tradestatus')

    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True, unique=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Items table
    op.create_table(
        'items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('condition', sa.String(64), nullable=True),
        sa.Column('estimated_market_value', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_items_owner_id', 'items', ['owner_id'])

    # Trades table
    op.create_table(
        'trades',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('proposer_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('receiver_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('proposer_cash', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('receiver_cash', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', trade_status, nullable=False, server_default='PROPOSED'),
        sa.Column('parent_trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=True),
        sa.Column('counter_message', sa.Text(), nullable=True),
        sa.Column('proposer_tracking_number', sa.String(128), nullable=True),
        sa.Column('proposer_carrier', sa.String(64), nullable=True),
        sa.Column('proposer_submitted_tracking', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('receiver_tracking_number', sa.String(128), nullable=True),
        sa.Column('receiver_carrier', sa.String(64), nullable=True),
        sa.Column('receiver_submitted_tracking', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('proposer_verified_satisfaction', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('receiver_verified_satisfaction', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('proposer_rated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('receiver_rated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('rating_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dispute_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_trades_proposer', 'trades', ['proposer_id'])
    op.create_index('ix_trades_receiver', 'trades', ['receiver_id'])
    op.create_index('ix_trades_parent', 'trades', ['parent_trade_id'])

    # Trade items join table
    op.create_table(
        'trade_items',
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('items.id'), primary_key=True),
        sa.Column('side', sa.Enum('PROPOSER', 'RECEIVER', name='tradeside'), nullable=False),
    )

    # Escrow holds table
    op.create_table(
        'escrow_holds',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False),
        sa.Column('payer_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('recipient_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.Enum(*ESCROW_STATUSES, name='escrowstatus'), nullable=False, server_default='PENDING'),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_reference', sa.String(255), nullable=True),
        sa.Column('client_secret', sa.String(255), nullable=True),
        sa.Column('funding_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_escrow_holds_trade', 'escrow_holds', ['trade_id'])
    op.create_index(
        'uq_escrow_holds_active_trade',
        'escrow_holds',
        ['trade_id'],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('REFUNDED', 'PARTIALLY_REFUNDED')"),
        sqlite_where=sa.text("status NOT IN ('REFUNDED', 'PARTIALLY_REFUNDED')"),
    )

    # Ratings table
    op.create_table(
        'trade_ratings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False),
        sa.Column('rater_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('ratee_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('overall_score', sa.Integer(), nullable=False),
        sa.Column('item_accuracy_score', sa.Integer(), nullable=True),
        sa.Column('communication_score', sa.Integer(), nullable=True),
        sa.Column('shipping_speed_score', sa.Integer(), nullable=True),
        sa.Column('public_comment', sa.Text(), nullable=True),
        sa.Column('private_feedback', sa.Text(), nullable=True),
        sa.Column('is_revealed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('trade_id', 'rater_id', name='uq_trade_ratings_trade_rater'),
    )
    op.create_index('ix_trade_ratings_trade', 'trade_ratings', ['trade_id'])
    op.create_index('ix_trade_ratings_ratee_id', 'trade_ratings', ['ratee_id'])

    # Disputes table
    op.create_table(
        'disputes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False),
        sa.Column('initiator_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('respondent_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('dispute_type', sa.Enum(
            'ITEM_NOT_AS_DESCRIBED', 'ITEM_NOT_RECEIVED', 'DAMAGED_IN_SHIPPING', 'COUNTERFEIT', 'OTHER',
            name='disputetype'), nullable=False),
        sa.Column('status', sa.Enum(
            'OPEN_AWAITING_RESPONSE', 'IN_MEDIATION', 'RESOLVED',
            name='disputestatus'), nullable=False, server_default='OPEN_AWAITING_RESPONSE'),
        sa.Column('initiator_statement', sa.Text(), nullable=False),
        sa.Column('respondent_statement', sa.Text(), nullable=True),
        sa.Column('resolution', sa.Enum(
            'REFUND_INITIATOR', 'MUTUALLY_RESOLVED', 'TRADE_UPHELD',
            name='disputeresolution'), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('trade_status_before', trade_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_disputes_trade', 'disputes', ['trade_id'])
    op.create_index(
        'uq_disputes_open_trade',
        'disputes',
        ['trade_id'],
        unique=True,
        postgresql_where=sa.text("status != 'RESOLVED'"),
        sqlite_where=sa.text("status != 'RESOLVED'"),
    )

    # Notifications table
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.Enum(*NOTIFICATION_TYPES, name='notificationtype'), nullable=False),
        sa.Column('trade_id', sa.String(36), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_read', 'notifications', ['user_id', 'is_read'])

    # Price signals table
    op.create_table(
        'trade_price_signals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('items.id'), nullable=False),
        sa.Column('item_name', sa.String(255), nullable=False),
        sa.Column('condition', sa.String(64), nullable=True),
        sa.Column('implied_value_cents', sa.BigInteger(), nullable=False),
        sa.Column('signal_confidence', sa.Integer(), nullable=False),
        sa.Column('trade_completed_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_price_signals_item', 'trade_price_signals', ['item_id'])


def downgrade() -> None:
    op.drop_table('trade_price_signals')
    op.drop_table('notifications')
    op.drop_table('disputes')
    op.drop_table('trade_ratings')
    op.drop_table('escrow_holds')
    op.drop_table('trade_items')
    op.drop_table('trades')
    op.drop_table('items')
    op.drop_table('users')

    if op.get_bind().dialect.name == 'postgresql':
        for enum_name in ENUM_TYPES:
            op.execute(f"DROP TYPE IF EXISTS {enum_name}")
