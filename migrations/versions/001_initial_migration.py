"""Initial migration - indexer state, indexed events and payment tables

Revision ID: 001
Revises:
Create Date: 2026-10-16 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


EVENT_STATUS = sa.Enum('PENDING', 'PROCESSED', 'FAILED', 'NEEDS_INTERVENTION', 'SKIPPED', name='eventstatus')
PAYMENT_TYPE = sa.Enum('LIFT_UNIT_PURCHASE', 'PROJECT_FUNDING', 'REPAYMENT', 'PLATFORM_FEE', 'STEWARD_PAYMENT', name='paymenttype')
PAYMENT_STATUS = sa.Enum('PENDING', 'CONFIRMED', 'IN_ESCROW', 'COMPLETED', 'FAILED', name='paymentstatus')
PAYMENT_EVENT_TYPE = sa.Enum('PROCEEDS_NOTIFIED', 'UNITS_SOLD', name='paymenteventtype')
LIFT_UNIT_STATUS = sa.Enum('AVAILABLE', 'SOLD', 'RETIRED', name='liftunitstatus')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Last row update time'),
    ]


def upgrade() -> None:
    # Create indexer_states table
    op.create_table('indexer_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('network_id', sa.Integer(), nullable=False, comment='Chain / network id'),
        sa.Column('contract_address', sa.String(length=42), nullable=False, comment='Lowercase contract address'),
        sa.Column('schema_kind', sa.String(length=32), nullable=False, comment='Event schema the source is decoded with'),
        sa.Column('start_height', sa.BigInteger(), nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('last_processed_height', sa.BigInteger(), nullable=False, comment='Highest block fully ingested'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True, comment='Last successful scan'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False, comment='Consecutive failed scans'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('network_id', 'contract_address', 'schema_kind', name='uq_indexer_state_source')
    )
    op.create_index('idx_indexer_state_active', 'indexer_states', ['is_active'])

    # Create indexed_events table
    op.create_table('indexed_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('network_id', sa.Integer(), nullable=False, comment='Chain / network id'),
        sa.Column('tx_hash', sa.String(length=66), nullable=False, comment='Transaction hash'),
        sa.Column('log_index', sa.Integer(), nullable=False, comment='Log index within block'),
        sa.Column('contract_address', sa.String(length=42), nullable=False, comment='Lowercase emitting contract'),
        sa.Column('schema_kind', sa.String(length=32), nullable=False, comment='Schema the log was decoded with'),
        sa.Column('event_name', sa.String(length=64), nullable=False, comment='Decoded event name or Unknown'),
        sa.Column('event_signature', sa.String(length=66), nullable=True, comment='First topic'),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('block_hash', sa.String(length=66), nullable=False),
        sa.Column('block_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tx_index', sa.Integer(), nullable=False),
        sa.Column('topics', sa.JSON(), nullable=False, comment='Raw topics'),
        sa.Column('data', sa.Text(), nullable=False, comment='Raw data, 0x-hex'),
        sa.Column('decoded_args', sa.JSON(), nullable=False, comment='JSON rendering of the typed payload'),
        sa.Column('status', EVENT_STATUS, nullable=False, comment='Processing status'),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, comment='Number of failed handler attempts'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('network_id', 'tx_hash', 'log_index', name='uq_indexed_event_log')
    )
    op.create_index('idx_indexed_event_contract_block', 'indexed_events', ['contract_address', 'block_number'])
    op.create_index('idx_indexed_event_name', 'indexed_events', ['event_name'])
    op.create_index('idx_indexed_event_retry', 'indexed_events', ['processed', 'retry_count'])
    op.create_index('idx_indexed_event_status_created', 'indexed_events', ['status', 'created_at'])

    # Create payments table
    op.create_table('payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_type', PAYMENT_TYPE, nullable=False),
        sa.Column('project_id', sa.BigInteger(), nullable=False),
        sa.Column('amount', sa.String(length=80), nullable=False),
        sa.Column('payment_token', sa.String(length=42), nullable=False),
        sa.Column('network_id', sa.Integer(), nullable=False),
        sa.Column('payer_address', sa.String(length=42), nullable=False),
        sa.Column('recipient_address', sa.String(length=42), nullable=False),
        sa.Column('consideration_ref', sa.String(length=66), nullable=True,
                  comment='bytes32 reference linking escrow events to this payment'),
        sa.Column('status', PAYMENT_STATUS, nullable=False),
        sa.Column('proceeds_notified', sa.Boolean(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_payment_project_ref', 'payments', ['project_id', 'consideration_ref'])

    # Create payment_events table
    op.create_table('payment_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('indexed_event_id', sa.Integer(), nullable=False),
        sa.Column('event_type', PAYMENT_EVENT_TYPE, nullable=False),
        sa.Column('amount', sa.String(length=80), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.ForeignKeyConstraint(['indexed_event_id'], ['indexed_events.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('indexed_event_id', 'event_type', name='uq_payment_event_source')
    )

    # Create lift_units table
    op.create_table('lift_units',
        sa.Column('token_id', sa.String(length=80), nullable=False),
        sa.Column('project_id', sa.BigInteger(), nullable=False),
        sa.Column('status', LIFT_UNIT_STATUS, nullable=False),
        sa.Column('quantity', sa.String(length=80), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('token_id')
    )


def downgrade() -> None:
    op.drop_table('lift_units')
    op.drop_table('payment_events')
    op.drop_index('idx_payment_project_ref', table_name='payments')
    op.drop_table('payments')
    op.drop_index('idx_indexed_event_status_created', table_name='indexed_events')
    op.drop_index('idx_indexed_event_retry', table_name='indexed_events')
    op.drop_index('idx_indexed_event_name', table_name='indexed_events')
    op.drop_index('idx_indexed_event_contract_block', table_name='indexed_events')
    op.drop_table('indexed_events')
    op.drop_index('idx_indexer_state_active', table_name='indexer_states')
    op.drop_table('indexer_states')

    # Drop enum types
    for enum_type in (LIFT_UNIT_STATUS, PAYMENT_EVENT_TYPE, PAYMENT_STATUS, PAYMENT_TYPE, EVENT_STATUS):
        enum_type.drop(op.get_bind(), checkfirst=True)
