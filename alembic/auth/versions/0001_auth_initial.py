"""auth database: accounts, tenants, billing

Revision ID: 0001_auth_initial
Revises:
Create Date: 2025-11-03 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_auth_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('email_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification_token_hash', sa.String(length=64), nullable=True),
        sa.Column('reset_token_hash', sa.String(length=64), nullable=True),
        sa.Column('reset_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active_company_id', sa.Integer(), nullable=True),
        sa.Column('session_version', sa.Integer(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_verification_token_hash', 'users', ['verification_token_hash'])
    op.create_index('ix_users_reset_token_hash', 'users', ['reset_token_hash'])

    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('kvk_number', sa.String(length=8), nullable=True),
        sa.Column('loonheffingennummer', sa.String(length=20), nullable=True),
        sa.Column('industry', sa.String(length=120), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('postal_code', sa.String(length=10), nullable=True),
        sa.Column('city', sa.String(length=120), nullable=True),
        sa.Column('country', sa.String(length=2), nullable=True),
        sa.Column('awf_rate_class', sa.String(length=10), nullable=True),
        sa.Column('aof_rate_class', sa.String(length=10), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_companies_kvk_number', 'companies', ['kvk_number'])

    op.create_table(
        'user_companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.UniqueConstraint('user_id', 'company_id', name='uq_user_company'),
    )
    op.create_index('ix_user_companies_user_id', 'user_companies', ['user_id'])
    op.create_index('ix_user_companies_company_id', 'user_companies', ['company_id'])

    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=80), nullable=False, unique=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('interval', sa.String(length=10), nullable=True),
        sa.Column('max_employees', sa.Integer(), nullable=True),
        sa.Column('max_payrolls', sa.Integer(), nullable=True),
        sa.Column('features_json', sa.Text(), nullable=True),
        sa.Column('processor_price_id', sa.String(length=120), nullable=True),
        sa.Column('is_trial', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_plans_processor_price_id', 'plans', ['processor_price_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False, unique=True),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('processor_customer_id', sa.String(length=120), nullable=True),
        sa.Column('processor_subscription_id', sa.String(length=120), nullable=True, unique=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_extensions', sa.Integer(), nullable=True),
        sa.Column('converted_from_trial', sa.Boolean(), nullable=True),
        sa.Column('trial_converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
    )
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_processor_customer_id', 'subscriptions', ['processor_customer_id'])
    op.create_index('ix_subscriptions_status_trial_end', 'subscriptions', ['status', 'trial_end'])

    op.create_table(
        'processor_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(length=120), nullable=False, unique=True),
        sa.Column('event_type', sa.String(length=80), nullable=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('result', sa.String(length=40), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_processor_events_company_id', 'processor_events', ['company_id'])

    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('method', sa.String(length=10), nullable=False),
        sa.Column('path', sa.String(length=255), nullable=False),
        sa.Column('body_hash', sa.String(length=64), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('user_id', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('company_id', 'user_id', 'key', 'method', 'path', name='uq_idem_scope_key'),
    )
    op.create_index('ix_idem_created_at', 'idempotency_records', ['created_at'])

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actor', sa.String(length=120), nullable=True),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=80), nullable=True),
        sa.Column('resource', sa.String(length=255), nullable=True),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('ua', sa.String(length=255), nullable=True),
        sa.Column('result', sa.String(length=40), nullable=True),
        sa.Column('meta_json', sa.Text(), nullable=True),
    )
    op.create_index('ix_audit_events_ts', 'audit_events', ['ts'])
    op.create_index('ix_audit_events_company_id', 'audit_events', ['company_id'])
    op.create_index('ix_audit_company_ts', 'audit_events', ['company_id', 'ts'])


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_index('ix_idem_created_at', table_name='idempotency_records')
    op.drop_table('idempotency_records')
    op.drop_table('processor_events')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('user_companies')
    op.drop_table('companies')
    op.drop_table('users')
