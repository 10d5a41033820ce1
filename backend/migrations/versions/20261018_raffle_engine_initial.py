"""Initial raffle engine schema

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration adds:
1. raffles and package_prices (raffle setup, numbering, unit and package prices)
2. generation_jobs and inventory_blocks (checkpointed ticket generation)
3. orders and ticket_ranges (range-based ticket inventory)
4. customers (permanent buyer ledger)
5. winner_draws and archived_summaries (draw results, archival snapshots)
6. domain_events (outbox for external notifiers)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated=False):
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)'))]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')))
    return cols


def upgrade():
    # ==========================================================================
    # 1. RAFFLES
    # ==========================================================================
    op.create_table('raffles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('total_tickets', sa.Integer(), nullable=False),
        sa.Column('ticket_price_cents', sa.Integer(), nullable=False),
        sa.Column('number_pad_width', sa.Integer(), nullable=False),
        sa.Column('number_pad_char', sa.String(length=1), nullable=False),
        sa.Column('number_prefix', sa.String(length=32), nullable=True),
        sa.Column('number_suffix', sa.String(length=32), nullable=True),
        sa.Column('number_start', sa.Integer(), nullable=False),
        sa.Column('number_step', sa.Integer(), nullable=False),
        sa.Column('reservation_ttl_minutes', sa.Integer(), nullable=True),
        sa.Column('draw_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inventory_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        *_timestamps(updated=True),
        sa.CheckConstraint('total_tickets >= 1 AND total_tickets <= 10000000', name='ck_raffles_total_tickets'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_raffles_status', 'raffles', ['status'])
    op.create_index('ix_raffles_archived_at', 'raffles', ['archived_at'])
    op.create_index('ix_raffles_status_draw_date', 'raffles', ['status', 'draw_date'])

    op.create_table('package_prices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('quantity > 0', name='ck_package_prices_quantity'),
        sa.CheckConstraint('price_cents >= 0', name='ck_package_prices_price'),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('raffle_id', 'quantity', name='uq_package_prices_raffle_quantity'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_package_prices_raffle_id', 'package_prices', ['raffle_id'])

    # ==========================================================================
    # 2. GENERATION
    # ==========================================================================
    op.create_table('generation_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('total_tickets', sa.Integer(), nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('total_batches', sa.Integer(), nullable=False),
        sa.Column('current_batch', sa.Integer(), nullable=False),
        sa.Column('generated_count', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('stale_resets', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_generation_jobs_raffle_id', 'generation_jobs', ['raffle_id'])
    op.create_index('ix_generation_jobs_status', 'generation_jobs', ['status'])
    op.create_index('ix_generation_jobs_status_created', 'generation_jobs', ['status', 'created_at'])

    op.create_table('inventory_blocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=True),
        sa.Column('batch_index', sa.Integer(), nullable=False),
        sa.Column('start_index', sa.Integer(), nullable=False),
        sa.Column('end_index', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('end_index >= start_index', name='ck_inventory_blocks_bounds'),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.ForeignKeyConstraint(['job_id'], ['generation_jobs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('raffle_id', 'batch_index', name='uq_inventory_blocks_raffle_batch'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_inventory_blocks_raffle_id', 'inventory_blocks', ['raffle_id'])
    op.create_index('ix_inventory_blocks_job_id', 'inventory_blocks', ['job_id'])
    op.create_index('ix_inventory_blocks_raffle_start', 'inventory_blocks', ['raffle_id', 'start_index'])

    # ==========================================================================
    # 3. ORDERS & TICKET RANGES
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('reference_code', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('ticket_count', sa.Integer(), nullable=False),
        sa.Column('buyer_name', sa.String(length=255), nullable=True),
        sa.Column('buyer_email', sa.String(length=255), nullable=True),
        sa.Column('buyer_phone', sa.String(length=32), nullable=True),
        sa.Column('buyer_city', sa.String(length=128), nullable=True),
        sa.Column('reserved_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('order_total_cents', sa.Integer(), nullable=True),
        sa.Column('payment_proof_ref', sa.String(length=512), nullable=True),
        sa.Column('cancel_reason', sa.String(length=32), nullable=True),
        sa.Column('sold_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        *_timestamps(updated=True),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('raffle_id', 'reference_code', name='uq_orders_raffle_reference'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_orders_raffle_id', 'orders', ['raffle_id'])
    op.create_index('ix_orders_raffle_status', 'orders', ['raffle_id', 'status'])
    op.create_index('ix_orders_status_reserved_until', 'orders', ['status', 'reserved_until'])

    op.create_table('ticket_ranges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('start_index', sa.Integer(), nullable=False),
        sa.Column('end_index', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('end_index >= start_index', name='ck_ticket_ranges_bounds'),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_ticket_ranges_order_id', 'ticket_ranges', ['order_id'])
    op.create_index('ix_ticket_ranges_raffle_start', 'ticket_ranges', ['raffle_id', 'start_index'])
    op.create_index('ix_ticket_ranges_raffle_status_start', 'ticket_ranges', ['raffle_id', 'status', 'start_index'])

    # ==========================================================================
    # 4. CUSTOMER LEDGER
    # ==========================================================================
    op.create_table('customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('buyer_key', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('city', sa.String(length=128), nullable=True),
        sa.Column('total_orders', sa.Integer(), nullable=False),
        sa.Column('total_tickets', sa.Integer(), nullable=False),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False),
        sa.Column('first_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('buyer_key', name='uq_customers_buyer_key'),
        sqlite_autoincrement=True,
    )

    # ==========================================================================
    # 5. DRAWS & ARCHIVE
    # ==========================================================================
    op.create_table('winner_draws',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('prize_name', sa.String(length=255), nullable=True),
        sa.Column('ticket_index', sa.Integer(), nullable=False),
        sa.Column('ticket_number', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('winner_name', sa.String(length=255), nullable=True),
        sa.Column('winner_email', sa.String(length=255), nullable=True),
        sa.Column('winner_phone', sa.String(length=32), nullable=True),
        sa.Column('winner_city', sa.String(length=128), nullable=True),
        sa.Column('sold_count', sa.Integer(), nullable=False),
        sa.Column('random_offset', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False),
        sa.Column('drawn_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_winner_draws_raffle_id', 'winner_draws', ['raffle_id'])
    op.create_index('ix_winner_draws_raffle_drawn', 'winner_draws', ['raffle_id', 'drawn_at'])

    op.create_table('archived_summaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=False),
        sa.Column('tickets_sold', sa.Integer(), nullable=False),
        sa.Column('tickets_reserved', sa.Integer(), nullable=False),
        sa.Column('total_revenue_cents', sa.Integer(), nullable=False),
        sa.Column('unique_buyers', sa.Integer(), nullable=False),
        sa.Column('buyer_cities', sa.JSON(), nullable=False),
        sa.Column('winners', sa.JSON(), nullable=False),
        sa.Column('draw_executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.ForeignKeyConstraint(['raffle_id'], ['raffles.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('raffle_id', name='uq_archived_summaries_raffle'),
        sqlite_autoincrement=True,
    )

    # ==========================================================================
    # 6. DOMAIN EVENTS
    # ==========================================================================
    op.create_table('domain_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raffle_id', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_domain_events_raffle_id', 'domain_events', ['raffle_id'])
    op.create_index('ix_domain_events_event_type', 'domain_events', ['event_type'])
    op.create_index('ix_domain_events_occurred_at', 'domain_events', ['occurred_at'])
    op.create_index('ix_domain_events_raffle_occurred', 'domain_events', ['raffle_id', 'occurred_at'])


def downgrade():
    op.drop_table('domain_events')
    op.drop_table('archived_summaries')
    op.drop_table('winner_draws')
    op.drop_table('customers')
    op.drop_table('ticket_ranges')
    op.drop_table('orders')
    op.drop_table('inventory_blocks')
    op.drop_table('generation_jobs')
    op.drop_table('package_prices')
    op.drop_table('raffles')
