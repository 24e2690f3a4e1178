"""Earnings ledger schema: users, articles, orders, withdrawal requests, webhook events

Revision ID: 001_ledger
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_ledger'
down_revision = None
branch_labels = None
depends_on = None


ORDER_STATUSES = ('pending', 'paid', 'refunded', 'partially_refunded')
WITHDRAWAL_STATUSES = ('requested', 'queued', 'processing', 'paid', 'failed', 'canceled')


def upgrade() -> None:
    # Enums
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE order_status AS ENUM {ORDER_STATUSES!r};
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE withdrawal_status AS ENUM {WITHDRAWAL_STATUSES!r};
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE webhooksource AS ENUM ('STRIPE');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE webhookeventstatus AS ENUM ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Users
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(100)),
        sa.Column('role', sa.String(20), nullable=False, server_default='USER'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),

        sa.Column('stripe_customer_id', sa.String(255)),

        # Payout account cache
        sa.Column('stripe_account_id', sa.String(255), unique=True),
        sa.Column('stripe_account_status', sa.String(20)),
        sa.Column('identity_submitted', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('bank_account_registered', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('payouts_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('charges_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('payout_status_synced_at', sa.DateTime(timezone=True)),

        # Subscription
        sa.Column('is_premium', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('subscription_status', sa.String(20)),
        sa.Column('stripe_subscription_id', sa.String(255)),
        sa.Column('subscription_current_period_start', sa.DateTime(timezone=True)),
        sa.Column('subscription_current_period_end', sa.DateTime(timezone=True)),
        sa.Column('subscription_started_at', sa.DateTime(timezone=True)),
        sa.Column('subscription_canceled_at', sa.DateTime(timezone=True)),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('USER', 'CREATOR', 'ADMIN')", name='chk_user_role'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Articles
    op.create_table(
        'articles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('author_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False, unique=True),
        sa.Column('price', sa.Integer, nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('affiliate_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('affiliate_rate', sa.Integer, nullable=False, server_default='0'),
        sa.Column('affiliate_rate_last_changed_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('price >= 0', name='chk_article_price_positive'),
        sa.CheckConstraint('affiliate_rate >= 0 AND affiliate_rate <= 50', name='chk_article_affiliate_rate_range'),
    )
    op.create_index('ix_articles_author_id', 'articles', ['author_id'])
    op.create_index('idx_article_author_status', 'articles', ['author_id', 'status'])

    # Withdrawal requests (before orders: orders reference them)
    op.create_table(
        'withdrawal_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column(
            'status',
            sa.Enum(*WITHDRAWAL_STATUSES, name='withdrawal_status', create_type=False),
            nullable=False,
            server_default='requested',
        ),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('queued_at', sa.DateTime(timezone=True)),
        sa.Column('processing_started_at', sa.DateTime(timezone=True)),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        sa.Column('failure_reason', sa.Text),
        sa.Column('stripe_transfer_id', sa.String(255), unique=True),
        sa.Column('settled_order_amount', sa.Integer),
        sa.Column('target_year', sa.Integer, nullable=False),
        sa.Column('target_month', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('amount > 0', name='chk_withdrawal_amount_positive'),
        sa.CheckConstraint('target_month BETWEEN 1 AND 12', name='chk_withdrawal_target_month'),
        sa.CheckConstraint(
            "status != 'paid' OR stripe_transfer_id IS NOT NULL",
            name='chk_withdrawal_paid_has_transfer',
        ),
    )
    op.create_index('ix_withdrawal_requests_user_id', 'withdrawal_requests', ['user_id'])
    op.create_index('idx_withdrawal_status_requested', 'withdrawal_requests', ['status', 'requested_at'])
    op.create_index('idx_withdrawal_user_status', 'withdrawal_requests', ['user_id', 'status'])

    # Orders
    op.create_table(
        'orders',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('buyer_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('guest_email', sa.String(255)),
        sa.Column('article_id', UUID(as_uuid=True), sa.ForeignKey('articles.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('author_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('affiliate_user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL')),

        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column(
            'status',
            sa.Enum(*ORDER_STATUSES, name='order_status', create_type=False),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('platform_fee', sa.Integer),
        sa.Column('author_amount', sa.Integer),
        sa.Column('affiliate_amount', sa.Integer, nullable=False, server_default='0'),

        sa.Column('payment_provider', sa.String(20), nullable=False, server_default='stripe'),
        sa.Column('stripe_session_id', sa.String(255), unique=True),
        sa.Column('stripe_payment_intent_id', sa.String(255)),

        sa.Column(
            'author_withdrawal_id',
            UUID(as_uuid=True),
            sa.ForeignKey('withdrawal_requests.id', ondelete='RESTRICT'),
        ),
        sa.Column(
            'affiliate_withdrawal_id',
            UUID(as_uuid=True),
            sa.ForeignKey('withdrawal_requests.id', ondelete='RESTRICT'),
        ),

        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('refunded_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('amount > 0', name='chk_order_amount_positive'),
        sa.CheckConstraint('affiliate_amount >= 0', name='chk_order_affiliate_non_negative'),
        sa.CheckConstraint(
            "status != 'paid' OR platform_fee + author_amount + affiliate_amount = amount",
            name='chk_order_split_balances',
        ),
    )
    op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])
    op.create_index('ix_orders_article_id', 'orders', ['article_id'])
    op.create_index('ix_orders_stripe_payment_intent_id', 'orders', ['stripe_payment_intent_id'])
    op.create_index('idx_order_author_status', 'orders', ['author_id', 'status'])
    op.create_index('idx_order_affiliate_status', 'orders', ['affiliate_user_id', 'status'])
    op.create_index('idx_order_buyer_article', 'orders', ['buyer_id', 'article_id'])

    # Partial indexes for the unswept-share scan in the sweep
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_order_author_unswept
        ON orders (author_id, paid_at)
        WHERE status = 'paid' AND author_withdrawal_id IS NULL;
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_order_affiliate_unswept
        ON orders (affiliate_user_id, paid_at)
        WHERE status = 'paid' AND affiliate_withdrawal_id IS NULL;
    """)

    # Webhook events (redelivery guard)
    op.create_table(
        'webhook_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column(
            'source',
            sa.Enum('STRIPE', name='webhooksource', create_type=False),
            nullable=False,
            server_default='STRIPE',
        ),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', JSONB, nullable=False),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', name='webhookeventstatus', create_type=False),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True)),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('error_message', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('attempts >= 0', name='chk_webhook_attempts_positive'),
    )
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_created_at', 'webhook_events', ['created_at'])
    op.create_index('idx_webhook_status_created', 'webhook_events', ['status', 'created_at'])


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('orders')
    op.drop_table('withdrawal_requests')
    op.drop_table('articles')
    op.drop_table('users')

    op.execute('DROP TYPE IF EXISTS webhookeventstatus')
    op.execute('DROP TYPE IF EXISTS webhooksource')
    op.execute('DROP TYPE IF EXISTS withdrawal_status')
    op.execute('DROP TYPE IF EXISTS order_status')
