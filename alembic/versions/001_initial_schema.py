"""001 Initial schema - bookings, webhook logs, messaging, download links

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('bokun_booking_id', sa.String(64), nullable=False, unique=True),
        sa.Column('bokun_product_id', sa.String(32), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=True),
        sa.Column('booking_channel', sa.String(100), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=False, server_default='Guest'),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('tour_date', sa.DateTime(), nullable=False),
        sa.Column('pax', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('pax_details', sa.JSON(), nullable=True),
        sa.Column('participants', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending_ticket'),
        sa.Column('reference_number', sa.String(100), nullable=True),
        sa.Column('guide_name', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('has_audio_guide', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('audio_guide_url', sa.String(500), nullable=True),
        sa.Column('audio_guide_username', sa.String(100), nullable=True),
        sa.Column('audio_guide_password', sa.String(100), nullable=True),
        sa.Column('tickets_sent_at', sa.DateTime(), nullable=True),
        sa.Column('audio_guide_sent_at', sa.DateTime(), nullable=True),
        sa.Column('wizard_started_at', sa.DateTime(), nullable=True),
        sa.Column('wizard_last_step', sa.Integer(), nullable=True),
        sa.Column('wizard_abandoned_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_tour_date', 'bookings', ['tour_date'])
    op.create_index('ix_booking_status', 'bookings', ['status'])
    op.create_index('ix_booking_product', 'bookings', ['bokun_product_id'])
    op.create_index('ix_booking_customer_phone', 'bookings', ['customer_phone'])
    op.create_index('ix_booking_deleted', 'bookings', ['deleted_at'])

    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False, server_default='unknown'),
        sa.Column('confirmation_code', sa.String(64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_webhook_log_status', 'webhook_logs', ['status', 'created_at'])
    op.create_index('ix_webhook_log_event_type', 'webhook_logs', ['event_type'])
    op.create_index('ix_webhook_log_code', 'webhook_logs', ['confirmation_code'])

    op.create_table(
        'message_templates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False, unique=True),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('language', sa.String(5), nullable=False, server_default='en'),
        sa.Column('template_type', sa.String(30), nullable=True),
        sa.Column('subject', sa.String(500), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('provider_template_id', sa.String(64), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_template_lookup', 'message_templates', ['channel', 'language', 'template_type'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('phone_number', sa.String(50), nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('phone_number', 'channel', name='uq_conversation_phone_channel'),
    )
    op.create_index('ix_conversation_last_message', 'conversations', ['last_message_at'])
    op.create_index('ix_conversation_status', 'conversations', ['status'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('conversation_id', sa.String(36),
                  sa.ForeignKey('conversations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('template_id', sa.String(36),
                  sa.ForeignKey('message_templates.id', ondelete='SET NULL'), nullable=True),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False, server_default='outbound'),
        sa.Column('external_id', sa.String(100), nullable=True),
        sa.Column('recipient', sa.String(255), nullable=False),
        sa.Column('sender_name', sa.String(255), nullable=True),
        sa.Column('subject', sa.String(500), nullable=True),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('template_variables', sa.JSON(), nullable=True),
        sa.Column('media_urls', sa.JSON(), nullable=True),
        sa.Column('attachment_ids', sa.JSON(), nullable=True),
        sa.Column('content_sid', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('queued_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_message_booking', 'messages', ['booking_id'])
    op.create_index('ix_message_conversation', 'messages', ['conversation_id', 'created_at'])
    op.create_index('ix_message_external_id', 'messages', ['external_id'])
    op.create_index('ix_message_status', 'messages', ['status', 'channel'])

    op.create_table(
        'message_attachments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_id', sa.String(36),
                  sa.ForeignKey('messages.id', ondelete='SET NULL'), nullable=True),
        sa.Column('original_name', sa.String(255), nullable=False),
        sa.Column('stored_name', sa.String(255), nullable=False),
        sa.Column('storage_path', sa.String(500), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False, server_default='application/pdf'),
        sa.Column('size', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_attachment_booking', 'message_attachments', ['booking_id'])
    op.create_index('ix_attachment_message', 'message_attachments', ['message_id'])

    op.create_table(
        'download_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('token', sa.String(8), nullable=False, unique=True),
        sa.Column('attachment_id', sa.String(36),
                  sa.ForeignKey('message_attachments.id', ondelete='CASCADE'), nullable=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=True),
        sa.Column('storage_path', sa.String(500), nullable=False),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False, server_default='application/pdf'),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('download_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_downloaded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_download_token_attachment', 'download_tokens', ['attachment_id'])
    op.create_index('ix_download_token_expires', 'download_tokens', ['expires_at'])


def downgrade():
    op.drop_table('download_tokens')
    op.drop_table('message_attachments')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('message_templates')
    op.drop_table('webhook_logs')
    op.drop_table('bookings')
