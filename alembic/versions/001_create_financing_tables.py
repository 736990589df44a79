"""Create financing_sessions, financing_session_events and preapproval_leads tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create financing tables."""
    op.create_table(
        'financing_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(100), nullable=False, index=True),
        sa.Column('application_id', sa.String(100), nullable=True, unique=True),
        sa.Column('partner_session_id', sa.String(100), nullable=False, unique=True),
        sa.Column('onboarding_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(40), nullable=False, server_default='created', index=True),
        sa.Column('last_remote_status', sa.String(100), nullable=True),
        sa.Column('payment_transaction_id', sa.String(100), nullable=True),
        sa.Column('approval_code', sa.String(100), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()'), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Cleanup sweep scans pending sessions by age
    op.create_index(
        'ix_financing_sessions_status_created_at',
        'financing_sessions',
        ['status', 'created_at'],
    )

    op.create_table(
        'financing_session_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'session_id',
            sa.String(36),
            sa.ForeignKey('financing_sessions.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('status', sa.String(40), nullable=False),
        sa.Column('remote_status', sa.String(100), nullable=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('payload', postgresql.JSONB, nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    op.create_table(
        'preapproval_leads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('request_id', sa.String(100), nullable=False, unique=True),
        sa.Column('lead_id', sa.String(100), nullable=True, index=True),
        sa.Column('session_id', sa.String(100), nullable=False, index=True),
        sa.Column('browser_fingerprint', sa.String(100), nullable=False, index=True),
        sa.Column('onboarding_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('remote_status', sa.String(100), nullable=True),
        sa.Column('max_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('webhook_payload', postgresql.JSONB, nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()'), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )


def downgrade() -> None:
    """Drop financing tables."""
    op.drop_table('preapproval_leads')
    op.drop_table('financing_session_events')
    op.drop_index('ix_financing_sessions_status_created_at', table_name='financing_sessions')
    op.drop_table('financing_sessions')
