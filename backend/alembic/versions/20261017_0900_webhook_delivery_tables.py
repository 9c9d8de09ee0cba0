"""create webhook_endpoints and webhook_deliveries tables

Revision ID: 20261017_webhooks
Revises:
Create Date: 2026-10-17 09:00:00

Endpoint registry (read by the dispatcher) and the durable delivery queue.
The unique constraint on (endpoint_id, event_type, resource_id) makes
enqueue idempotent; the (status, next_attempt_at) index serves queue drains.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '20261017_webhooks'
down_revision = None
branch_labels = None
depends_on = None

delivery_status = postgresql.ENUM(
    'pending', 'delivering', 'failed', 'completed',
    name='webhook_delivery_status',
    create_type=False,
)


def upgrade() -> None:
    """Create webhook tables."""
    delivery_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'webhook_endpoints',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('secret', sa.String(), nullable=False, comment='Signing secret, decrypted by the registry'),
        sa.Column('events', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhook_endpoints_owner_id', 'webhook_endpoints', ['owner_id'])
    op.create_index('ix_webhook_endpoints_created_at', 'webhook_endpoints', ['created_at'])

    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('endpoint_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=False),
        sa.Column(
            'payload',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            comment='Event envelope snapshot taken at enqueue time'
        ),
        sa.Column('status', delivery_status, nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True, comment='Receiver response, truncated to 10 KB'),
        sa.Column('last_error', sa.String(length=1000), nullable=True, comment='Sanitized error text'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'endpoint_id', 'event_type', 'resource_id',
            name='uq_webhook_deliveries_idempotency'
        )
    )
    op.create_index('ix_webhook_deliveries_endpoint_id', 'webhook_deliveries', ['endpoint_id'])
    op.create_index('ix_webhook_deliveries_created_at', 'webhook_deliveries', ['created_at'])
    op.create_index(
        'ix_webhook_deliveries_status_next_attempt',
        'webhook_deliveries',
        ['status', 'next_attempt_at']
    )


def downgrade() -> None:
    """Drop webhook tables."""
    op.drop_index('ix_webhook_deliveries_status_next_attempt', table_name='webhook_deliveries')
    op.drop_index('ix_webhook_deliveries_created_at', table_name='webhook_deliveries')
    op.drop_index('ix_webhook_deliveries_endpoint_id', table_name='webhook_deliveries')
    op.drop_table('webhook_deliveries')

    op.drop_index('ix_webhook_endpoints_created_at', table_name='webhook_endpoints')
    op.drop_index('ix_webhook_endpoints_owner_id', table_name='webhook_endpoints')
    op.drop_table('webhook_endpoints')

    delivery_status.drop(op.get_bind(), checkfirst=True)
