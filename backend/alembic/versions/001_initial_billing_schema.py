"""Initial billing schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

WHAT: Creates plans, subscriptions, license batches, organizations,
groups, usage metrics, invoices, audit logs, webhook records, the
feature catalog and verification tokens.

WHY: Upstream (gateway) identifiers are optional: free plans, admin
assignments and unassigned seats store NULL. Their uniqueness is
enforced by partial unique indexes that ignore NULLs.

HOW: Enum columns are VARCHARs holding the enum value, so adding a
status never needs a type migration.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def _unique_when_present(name: str, table: str, column: str) -> None:
    op.create_index(
        name,
        table,
        [column],
        unique=True,
        postgresql_where=sa.text(f'{column} IS NOT NULL'),
        sqlite_where=sa.text(f'{column} IS NOT NULL'),
    )


def upgrade() -> None:
    # Plans
    op.create_table(
        'plans',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='eur'),
        sa.Column('billing_interval', sa.String(32), nullable=False, server_default='month'),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('uses_tiered_pricing', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('pricing_tiers', sa.JSON(), nullable=False),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('planned_features', sa.JSON(), nullable=False),
        sa.Column('max_concurrent_terminals', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_session_duration_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('max_courses', sa.Integer(), nullable=False, server_default='-1'),
        sa.Column('max_lab_sessions', sa.Integer(), nullable=False, server_default='-1'),
        sa.Column('max_concurrent_users', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('storage_gb', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('allowed_machine_sizes', sa.JSON(), nullable=False),
        sa.Column('allowed_templates', sa.JSON(), nullable=False),
        sa.Column('allowed_backends', sa.JSON(), nullable=False),
        sa.Column('network_access_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('data_persistence_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('required_role', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('upstream_product_id', sa.String(255), nullable=True),
        sa.Column('upstream_price_id', sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_plans_name', 'plans', ['name'])
    _unique_when_present('uq_plans_upstream_product_id', 'plans', 'upstream_product_id')
    _unique_when_present('uq_plans_upstream_price_id', 'plans', 'upstream_price_id')

    # Organizations
    op.create_table(
        'organizations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('owner_user_id', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_organizations_name', 'organizations', ['name'])
    op.create_index('ix_organizations_owner_user_id', 'organizations', ['owner_user_id'])

    op.create_table(
        'organization_members',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'organization_id',
            sa.Uuid(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('role', sa.String(32), nullable=False, server_default='member'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'user_id', name='uq_organization_members_org_user'),
    )
    op.create_index('ix_organization_members_organization_id', 'organization_members', ['organization_id'])
    op.create_index('ix_organization_members_user_id', 'organization_members', ['user_id'])

    # Groups
    op.create_table(
        'groups',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('owner_user_id', sa.String(255), nullable=False),
        sa.Column(
            'organization_id',
            sa.Uuid(),
            sa.ForeignKey('organizations.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_groups_owner_user_id', 'groups', ['owner_user_id'])
    op.create_index('ix_groups_organization_id', 'groups', ['organization_id'])

    op.create_table(
        'group_members',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('group_id', sa.Uuid(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('role', sa.String(32), nullable=False, server_default='member'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('group_id', 'user_id', name='uq_group_members_group_user'),
    )
    op.create_index('ix_group_members_group_id', 'group_members', ['group_id'])
    op.create_index('ix_group_members_user_id', 'group_members', ['user_id'])

    # License batches
    op.create_table(
        'license_batches',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('purchaser_user_id', sa.String(255), nullable=False),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('group_id', sa.Uuid(), sa.ForeignKey('groups.id', ondelete='SET NULL'), nullable=True),
        sa.Column('total_quantity', sa.Integer(), nullable=False),
        sa.Column('assigned_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(32), nullable=False, server_default='active'),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('upstream_subscription_id', sa.String(255), nullable=True),
        sa.Column('upstream_subscription_item_id', sa.String(255), nullable=True),
        sa.Column('upstream_customer_id', sa.String(255), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('total_quantity >= 1', name='ck_license_batches_total_positive'),
        sa.CheckConstraint(
            'assigned_quantity >= 0 AND assigned_quantity <= total_quantity',
            name='ck_license_batches_assigned_range',
        ),
    )
    op.create_index('ix_license_batches_purchaser_user_id', 'license_batches', ['purchaser_user_id'])
    op.create_index('ix_license_batches_plan_id', 'license_batches', ['plan_id'])
    op.create_index('ix_license_batches_group_id', 'license_batches', ['group_id'])
    _unique_when_present(
        'uq_license_batches_upstream_subscription_id', 'license_batches', 'upstream_subscription_id'
    )

    # Subscriptions (personal, licenses, parked)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('purchaser_user_id', sa.String(255), nullable=True),
        sa.Column('assigned_by_user_id', sa.String(255), nullable=True),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=True),
        sa.Column(
            'batch_id',
            sa.Uuid(),
            sa.ForeignKey('license_batches.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('subscription_type', sa.String(32), nullable=False, server_default='personal'),
        sa.Column('status', sa.String(32), nullable=False, server_default='incomplete'),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('upstream_subscription_id', sa.String(255), nullable=True),
        sa.Column('upstream_customer_id', sa.String(255), nullable=True),
        sa.Column('checkout_session_id', sa.String(255), nullable=True),
        sa.Column('last_invoice_id', sa.String(255), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_purchaser_user_id', 'subscriptions', ['purchaser_user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_batch_id', 'subscriptions', ['batch_id'])
    op.create_index('ix_subscriptions_upstream_customer_id', 'subscriptions', ['upstream_customer_id'])
    op.create_index('ix_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])
    op.create_index('ix_subscriptions_batch_status', 'subscriptions', ['batch_id', 'status'])
    _unique_when_present(
        'uq_subscriptions_upstream_subscription_id', 'subscriptions', 'upstream_subscription_id'
    )
    _unique_when_present('uq_subscriptions_checkout_session_id', 'subscriptions', 'checkout_session_id')

    op.create_table(
        'organization_subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'organization_id',
            sa.Uuid(),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('created_by_user_id', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(32), nullable=False, server_default='incomplete'),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('upstream_subscription_id', sa.String(255), nullable=True),
        sa.Column('upstream_customer_id', sa.String(255), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'ix_organization_subscriptions_organization_id', 'organization_subscriptions', ['organization_id']
    )
    op.create_index('ix_organization_subscriptions_plan_id', 'organization_subscriptions', ['plan_id'])
    _unique_when_present(
        'uq_organization_subscriptions_upstream_subscription_id',
        'organization_subscriptions',
        'upstream_subscription_id',
    )

    # Usage metrics
    op.create_table(
        'usage_metrics',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column(
            'subscription_id',
            sa.Uuid(),
            sa.ForeignKey('subscriptions.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('metric_type', sa.String(32), nullable=False),
        sa.Column('current_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('limit_value', sa.Integer(), nullable=False, server_default='-1'),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'metric_type', name='uq_usage_metrics_user_metric'),
    )
    op.create_index('ix_usage_metrics_user_id', 'usage_metrics', ['user_id'])
    op.create_index('ix_usage_metrics_subscription_id', 'usage_metrics', ['subscription_id'])

    # Invoices
    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('organization_id', sa.Uuid(), nullable=True),
        sa.Column(
            'subscription_id',
            sa.Uuid(),
            sa.ForeignKey('subscriptions.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('upstream_invoice_id', sa.String(255), nullable=True),
        sa.Column('upstream_subscription_id', sa.String(255), nullable=True),
        sa.Column('amount_paid', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount_due', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='eur'),
        sa.Column('status', sa.String(32), nullable=False, server_default='open'),
        sa.Column('period_start', sa.DateTime(), nullable=True),
        sa.Column('period_end', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('hosted_invoice_url', sa.String(1000), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_invoices_user_id', 'invoices', ['user_id'])
    op.create_index('ix_invoices_organization_id', 'invoices', ['organization_id'])
    op.create_index('ix_invoices_subscription_id', 'invoices', ['subscription_id'])
    op.create_index('ix_invoices_upstream_subscription_id', 'invoices', ['upstream_subscription_id'])
    _unique_when_present('uq_invoices_upstream_invoice_id', 'invoices', 'upstream_invoice_id')

    # Audit logs (append-only)
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('severity', sa.String(32), nullable=False, server_default='info'),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('actor_email', sa.String(255), nullable=True),
        sa.Column('actor_ip', sa.String(45), nullable=True),
        sa.Column('actor_user_agent', sa.String(500), nullable=True),
        sa.Column('target_id', sa.String(255), nullable=True),
        sa.Column('target_type', sa.String(100), nullable=True),
        sa.Column('target_name', sa.String(255), nullable=True),
        sa.Column('organization_id', sa.Uuid(), nullable=True),
        sa.Column('action', sa.String(255), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='success'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('request_id', sa.String(100), nullable=True),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_logs_target_id', 'audit_logs', ['target_id'])
    op.create_index('ix_audit_logs_organization_id', 'audit_logs', ['organization_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_expires_at', 'audit_logs', ['expires_at'])
    op.create_index('ix_audit_logs_org_created', 'audit_logs', ['organization_id', 'created_at'])

    # Processed webhook events (dedup window)
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False, unique=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
    )
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_expires_at', 'webhook_events', ['expires_at'])

    # Feature catalog
    op.create_table(
        'feature_definitions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('key', sa.String(100), nullable=False, unique=True),
        sa.Column('display_name_en', sa.String(255), nullable=False),
        sa.Column('display_name_fr', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(32), nullable=False),
        sa.Column('value_type', sa.String(32), nullable=False, server_default='boolean'),
        sa.Column('unit', sa.String(50), nullable=True),
        sa.Column('default_value', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_feature_definitions_category', 'feature_definitions', ['category'])

    # Verification tokens
    op.create_table(
        'verification_tokens',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('token', sa.String(255), nullable=False, unique=True),
        sa.Column('token_type', sa.String(32), nullable=False, server_default='email_verification'),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_verification_tokens_user_id', 'verification_tokens', ['user_id'])
    op.create_index('ix_verification_tokens_expires_at', 'verification_tokens', ['expires_at'])


def downgrade() -> None:
    # WHY: Reverse dependency order so foreign keys never dangle
    for table in (
        'verification_tokens',
        'feature_definitions',
        'webhook_events',
        'audit_logs',
        'invoices',
        'usage_metrics',
        'organization_subscriptions',
        'subscriptions',
        'license_batches',
        'group_members',
        'groups',
        'organization_members',
        'organizations',
        'plans',
    ):
        op.drop_table(table)
