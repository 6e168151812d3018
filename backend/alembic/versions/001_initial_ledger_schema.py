"""Initial ledger schema

Revision ID: 001
Revises:
Create Date: 2026-10-16

WHAT: Creates the storage hierarchy (partner tiers, partners,
organizations, domains, users) and the billing tables (invoices, payment
transactions).

WHY: The CHECK constraints keep every pool's used counter within its size,
and the two UNIQUE constraints on payment_transactions make settlement of
a captured payment happen at most once.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DOMAIN_STATUSES = ('pending', 'dns_pending', 'active', 'suspended', 'failed')
USER_STATUSES = ('pending', 'active', 'suspended')
INVOICE_STATUSES = ('draft', 'sent', 'paid', 'overdue', 'cancelled')
INVOICE_TYPES = ('partner_storage', 'organization_subscription')


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'partner_tiers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index('ix_partner_tiers_id', 'partner_tiers', ['id'])

    op.create_table(
        'partners',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column(
            'allocated_storage_bytes',
            sa.BigInteger(),
            nullable=False,
            comment='Purchased storage pool in bytes',
        ),
        sa.Column(
            'used_storage_bytes',
            sa.BigInteger(),
            nullable=False,
            comment='Bytes carved into organizations',
        ),
        sa.Column('tier_name', sa.String(length=100), nullable=True),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('suspended_at', sa.DateTime(), nullable=True),
        sa.Column('suspension_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('allocated_storage_bytes >= 0', name='ck_partners_allocated_nonneg'),
        sa.CheckConstraint('used_storage_bytes >= 0', name='ck_partners_used_nonneg'),
        sa.CheckConstraint(
            'used_storage_bytes <= allocated_storage_bytes', name='ck_partners_used_within_pool'
        ),
    )
    op.create_index('ix_partners_id', 'partners', ['id'])

    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_retail', sa.Boolean(), nullable=False),
        sa.Column('total_storage_bytes', sa.BigInteger(), nullable=False),
        sa.Column('used_storage_bytes', sa.BigInteger(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('suspended_at', sa.DateTime(), nullable=True),
        sa.Column('suspension_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['partner_id'], ['partners.id'], ondelete='RESTRICT'),
        sa.CheckConstraint('total_storage_bytes >= 0', name='ck_organizations_total_nonneg'),
        sa.CheckConstraint('used_storage_bytes >= 0', name='ck_organizations_used_nonneg'),
        sa.CheckConstraint(
            'used_storage_bytes <= total_storage_bytes', name='ck_organizations_used_within_pool'
        ),
    )
    op.create_index('ix_organizations_id', 'organizations', ['id'])
    op.create_index('ix_organizations_partner_id', 'organizations', ['partner_id'])

    op.create_table(
        'organization_domains',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('domain_name', sa.String(length=255), nullable=False),
        sa.Column(
            'domain_quota_bytes',
            sa.BigInteger(),
            nullable=False,
            comment='Quota carved from the organization pool',
        ),
        sa.Column('max_quota_per_mailbox_mb', sa.Integer(), nullable=False),
        sa.Column('default_quota_per_mailbox_mb', sa.Integer(), nullable=False),
        sa.Column(
            'max_mailboxes', sa.Integer(), nullable=False, comment='0 means the platform default'
        ),
        sa.Column('status', sa.Enum(*DOMAIN_STATUSES, name='domainstatus'), nullable=False),
        sa.Column('mailcow_provisioned', sa.Boolean(), nullable=False),
        sa.Column('provisioning_error', sa.Text(), nullable=True),
        sa.Column('mx_record', sa.String(length=255), nullable=True),
        sa.Column('spf_record', sa.Text(), nullable=True),
        sa.Column('dkim_selector', sa.String(length=63), nullable=False),
        sa.Column('dkim_record', sa.Text(), nullable=True),
        sa.Column('dmarc_record', sa.Text(), nullable=True),
        sa.Column('dns_verified', sa.Boolean(), nullable=False),
        sa.Column('dns_verified_at', sa.DateTime(), nullable=True),
        sa.Column('last_verification_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.CheckConstraint('domain_quota_bytes >= 0', name='ck_domains_quota_nonneg'),
    )
    op.create_index('ix_organization_domains_id', 'organization_domains', ['id'])
    op.create_index(
        'ix_organization_domains_organization_id', 'organization_domains', ['organization_id']
    )
    op.create_index(
        'ix_organization_domains_domain_name', 'organization_domains', ['domain_name'], unique=True
    )
    op.create_index('ix_organization_domains_status', 'organization_domains', ['status'])

    op.create_table(
        'organization_users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('domain_id', sa.Integer(), nullable=False),
        sa.Column('email_address', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('mailbox_storage_bytes', sa.BigInteger(), nullable=False),
        sa.Column('drive_storage_bytes', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.Enum(*USER_STATUSES, name='userstatus'), nullable=False),
        sa.Column('provisioned_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['domain_id'], ['organization_domains.id'], ondelete='CASCADE'),
        sa.CheckConstraint('mailbox_storage_bytes >= 0', name='ck_users_mailbox_nonneg'),
        sa.CheckConstraint('drive_storage_bytes >= 0', name='ck_users_drive_nonneg'),
    )
    op.create_index('ix_organization_users_id', 'organization_users', ['id'])
    op.create_index(
        'ix_organization_users_organization_id', 'organization_users', ['organization_id']
    )
    op.create_index('ix_organization_users_domain_id', 'organization_users', ['domain_id'])
    op.create_index(
        'ix_organization_users_email_address', 'organization_users', ['email_address'], unique=True
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column(
            'invoice_number',
            sa.String(length=50),
            nullable=False,
            comment='Unique invoice number (e.g., INV-2410-3FA9C1)',
        ),
        sa.Column('invoice_type', sa.Enum(*INVOICE_TYPES, name='invoicetype'), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=True),
        sa.Column('organization_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=500), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column(
            'storage_bytes',
            sa.BigInteger(),
            nullable=False,
            comment='Bytes added to the buyer pool when paid',
        ),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('tax_rate', sa.Numeric(5, 4), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.Enum(*INVOICE_STATUSES, name='invoicestatus'), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('gateway_order_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['partner_id'], ['partners.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='SET NULL'),
        sa.CheckConstraint(
            '(partner_id IS NOT NULL AND organization_id IS NULL) OR '
            '(partner_id IS NULL AND organization_id IS NOT NULL)',
            name='ck_invoices_single_buyer',
        ),
        sa.CheckConstraint('storage_bytes >= 0', name='ck_invoices_storage_nonneg'),
    )
    op.create_index('ix_invoices_id', 'invoices', ['id'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'], unique=True)
    op.create_index('ix_invoices_partner_id', 'invoices', ['partner_id'])
    op.create_index('ix_invoices_organization_id', 'invoices', ['organization_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_gateway_order_id', 'invoices', ['gateway_order_id'], unique=True)

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=True),
        sa.Column('organization_id', sa.Integer(), nullable=True),
        sa.Column('gateway_order_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_signature', sa.String(length=256), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('gateway_payment_id', name='uq_payment_transactions_payment_id'),
        sa.UniqueConstraint('invoice_id', name='uq_payment_transactions_invoice_id'),
    )
    op.create_index('ix_payment_transactions_id', 'payment_transactions', ['id'])
    op.create_index(
        'ix_payment_transactions_gateway_order_id', 'payment_transactions', ['gateway_order_id']
    )


def downgrade() -> None:
    op.drop_table('payment_transactions')
    op.drop_table('invoices')
    op.drop_table('organization_users')
    op.drop_table('organization_domains')
    op.drop_table('organizations')
    op.drop_table('partners')
    op.drop_table('partner_tiers')

    for enum_name in ('invoicestatus', 'invoicetype', 'userstatus', 'domainstatus'):
        op.execute(f'DROP TYPE IF EXISTS {enum_name}')
