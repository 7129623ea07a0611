"""Create the negotiated-chat schema

This migration creates:
1. users, system_settings, settings_audit, notifications
2. requests, conversations, messages
3. realtime_outbox
4. wallets, ledger_entries, escrow_holds, payment_orders
5. the reserved system and platform users

Revision ID: create_chat_tables_001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = 'create_chat_tables_001'
down_revision = None
branch_labels = None
depends_on = None

SYSTEM_USER_ID = '00000000-0000-0000-0000-000000000000'
PLATFORM_USER_ID = '00000000-0000-0000-0000-000000000001'

FLOW_STATES = (
    'initial_offer', 'influencer_price_response', 'brand_owner_negotiation',
    'negotiation_input', 'influencer_final_response', 'brand_owner_pricing',
    'payment_pending', 'payment_completed', 'work_in_progress', 'work_submitted',
    'work_approved', 'real_time', 'closed',
)
REQUEST_STATUSES = (
    'applied', 'connected', 'negotiating', 'paid', 'work_submitted',
    'work_approved', 'completed', 'rejected',
)


def upgrade():
    # 1. Users, settings and notifications
    op.create_table('users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('user_type', sa.Enum('brand_owner', 'influencer', 'admin', name='usertype'), nullable=False, server_default='influencer'),
        sa.Column('profile_image_url', sa.String(500)),
        sa.Column('is_deleted', sa.Boolean, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table('system_settings',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.JSON, nullable=False),
        sa.Column('updated_by', sa.String(36), sa.ForeignKey('users.id')),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table('settings_audit',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('old_value', sa.JSON),
        sa.Column('new_value', sa.JSON),
        sa.Column('changed_by', sa.String(36), sa.ForeignKey('users.id')),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_settings_audit_key', 'settings_audit', ['key'])

    op.create_table('notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text),
        sa.Column('data', sa.JSON),
        sa.Column('read', sa.Boolean, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])

    # 2. Requests, conversations and messages
    op.create_table('requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('influencer_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('brand_owner_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('campaign_id', sa.String(36)),
        sa.Column('bid_id', sa.String(36)),
        sa.Column('status', sa.Enum(*REQUEST_STATUSES, name='requeststatus'), nullable=False, server_default='applied'),
        sa.Column('message', sa.Text),
        sa.Column('proposed_amount', sa.BigInteger),
        sa.Column('final_agreed_amount', sa.BigInteger),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('(campaign_id IS NULL) <> (bid_id IS NULL)', name='ck_requests_campaign_xor_bid'),
    )
    op.create_index('ix_requests_influencer_id', 'requests', ['influencer_id'])
    op.create_index('ix_requests_brand_owner_id', 'requests', ['brand_owner_id'])

    op.create_table('conversations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('brand_owner_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('influencer_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('campaign_id', sa.String(36)),
        sa.Column('bid_id', sa.String(36)),
        sa.Column('request_id', sa.String(36), sa.ForeignKey('requests.id'), unique=True),
        sa.Column('chat_status', sa.Enum('negotiation', 'realtime', 'closed', name='chatstatus'), nullable=False),
        sa.Column('flow_state', sa.Enum(*FLOW_STATES, name='flowstate'), nullable=False),
        sa.Column('awaiting_role', sa.Enum('brand_owner', 'influencer', 'none', name='awaitingrole'), nullable=False),
        sa.Column('final_agreed_amount', sa.BigInteger),
        sa.Column('current_offer_amount', sa.BigInteger),
        sa.Column('last_counter_amount', sa.BigInteger),
        sa.Column('negotiation_round', sa.Integer, nullable=False, server_default='0'),
        sa.Column('flow_data', sa.JSON),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_action_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
        sa.CheckConstraint('brand_owner_id <> influencer_id', name='ck_conversations_distinct_participants'),
        sa.CheckConstraint('negotiation_round >= 0', name='ck_conversations_round_non_negative'),
    )
    op.create_index('ix_conversations_brand_owner_updated', 'conversations', ['brand_owner_id', 'updated_at'])
    op.create_index('ix_conversations_influencer_updated', 'conversations', ['influencer_id', 'updated_at'])
    # One direct chat per (brand owner, influencer) pair
    op.create_index(
        'uq_conversations_direct_pair', 'conversations', ['brand_owner_id', 'influencer_id'],
        unique=True,
        postgresql_where=sa.text('request_id IS NULL AND campaign_id IS NULL AND bid_id IS NULL'),
    )

    op.create_table('messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('sender_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('receiver_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('body', sa.Text),
        sa.Column('action', sa.JSON),
        sa.Column('message_type', sa.Enum('user_input', 'automated', 'system', name='messagetype'), nullable=False),
        sa.Column('seen', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('seen_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_messages_conversation_created', 'messages', ['conversation_id', 'created_at', 'id'])
    op.create_index('ix_messages_receiver_unseen', 'messages', ['conversation_id', 'receiver_id', 'seen'])

    # 3. Realtime outbox
    op.create_table('realtime_outbox',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id')),
        sa.Column('room', sa.String(64), nullable=False),
        sa.Column('event', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime),
        sa.Column('dispatched_at', sa.DateTime),
    )
    op.create_index('ix_realtime_outbox_pending', 'realtime_outbox', ['dispatched_at', 'id'])

    # 4. Wallets and the ledger
    op.create_table('wallets',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), unique=True, nullable=False),
        sa.Column('available', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('frozen', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('withdrawn', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3)),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime),
        sa.CheckConstraint('available >= 0', name='ck_wallets_available_non_negative'),
        sa.CheckConstraint('frozen >= 0', name='ck_wallets_frozen_non_negative'),
        sa.CheckConstraint('withdrawn >= 0', name='ck_wallets_withdrawn_non_negative'),
    )

    op.create_table('ledger_entries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('wallet_id', sa.String(36), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('direction', sa.Enum('credit', 'debit', name='ledgerdirection'), nullable=False),
        sa.Column('kind', sa.Enum('deposit', 'escrow_hold', 'escrow_release', 'refund', 'withdrawal', 'fee', name='ledgerkind'), nullable=False),
        sa.Column('amount_minor', sa.BigInteger, nullable=False),
        sa.Column('status', sa.Enum('pending', 'completed', 'failed', name='ledgerstatus'), nullable=False),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id')),
        sa.Column('request_id', sa.String(36), sa.ForeignKey('requests.id')),
        sa.Column('gateway_payment_id', sa.String(255), unique=True),
        sa.Column('escrow_hold_id', sa.String(36)),
        sa.Column('description', sa.Text),
        sa.Column('created_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.CheckConstraint('amount_minor > 0', name='ck_ledger_entries_amount_positive'),
    )
    op.create_index('ix_ledger_entries_user_created', 'ledger_entries', ['user_id', 'created_at'])

    op.create_table('escrow_holds',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('payer_user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('payee_user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount_minor', sa.BigInteger, nullable=False),
        sa.Column('status', sa.Enum('locked', 'released', 'refunded', name='escrowstatusdb'), nullable=False),
        sa.Column('commission_bps', sa.Integer),
        sa.Column('hold_entry_id', sa.String(36), sa.ForeignKey('ledger_entries.id')),
        sa.Column('release_entry_id', sa.String(36), sa.ForeignKey('ledger_entries.id')),
        sa.Column('gateway_payment_id', sa.String(255)),
        sa.Column('locked_at', sa.DateTime),
        sa.Column('released_at', sa.DateTime),
    )
    op.create_index('ix_escrow_holds_conversation_id', 'escrow_holds', ['conversation_id'])
    # At most one locked hold per conversation
    op.create_index(
        'uq_escrow_holds_locked_conversation', 'escrow_holds', ['conversation_id'],
        unique=True, postgresql_where=sa.text("status = 'locked'"),
    )

    op.create_table('payment_orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id')),
        sa.Column('payer_user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('gateway_order_id', sa.String(255), unique=True, nullable=False),
        sa.Column('authorization_url', sa.String(500)),
        sa.Column('amount_minor', sa.BigInteger, nullable=False),
        sa.Column('currency', sa.String(3)),
        sa.Column('status', sa.Enum('created', 'paid', 'failed', name='paymentorderstatus'), nullable=False),
        sa.Column('gateway_payment_id', sa.String(255)),
        sa.Column('created_at', sa.DateTime),
        sa.Column('paid_at', sa.DateTime),
    )
    op.create_index('ix_payment_orders_conversation_id', 'payment_orders', ['conversation_id'])

    # 5. Reserved users
    users = sa.table('users',
        sa.column('id', sa.String), sa.column('email', sa.String),
        sa.column('name', sa.String), sa.column('user_type', sa.String),
    )
    op.bulk_insert(users, [
        {'id': SYSTEM_USER_ID, 'email': 'system@influence-chat.internal', 'name': 'System', 'user_type': 'admin'},
        {'id': PLATFORM_USER_ID, 'email': 'platform@influence-chat.internal', 'name': 'Platform', 'user_type': 'admin'},
    ])


def downgrade():
    for table in (
        'payment_orders', 'escrow_holds', 'ledger_entries', 'wallets',
        'realtime_outbox', 'messages', 'conversations', 'requests',
        'notifications', 'settings_audit', 'system_settings', 'users',
    ):
        op.drop_table(table)
    for enum_name in (
        'paymentorderstatus', 'escrowstatusdb', 'ledgerstatus', 'ledgerkind',
        'ledgerdirection', 'messagetype', 'awaitingrole', 'flowstate',
        'chatstatus', 'requeststatus', 'usertype',
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
