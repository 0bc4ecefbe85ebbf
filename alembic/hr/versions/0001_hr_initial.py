"""hr database: employees

Revision ID: 0001_hr_initial
Revises:
Create Date: 2025-11-03 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_hr_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('employee_number', sa.String(length=20), nullable=False),
        sa.Column('first_name', sa.String(length=120), nullable=False),
        sa.Column('last_name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=40), nullable=True),
        sa.Column('bsn', sa.String(length=255), nullable=True),
        sa.Column('iban', sa.String(length=34), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('position', sa.String(length=120), nullable=True),
        sa.Column('department', sa.String(length=120), nullable=True),
        sa.Column('employment_type', sa.String(length=20), nullable=True),
        sa.Column('contract_type', sa.String(length=20), nullable=True),
        sa.Column('working_hours_per_week', sa.Numeric(5, 2), nullable=True),
        sa.Column('salary_type', sa.String(length=10), nullable=True),
        sa.Column('monthly_salary', sa.Numeric(12, 2), nullable=True),
        sa.Column('hourly_rate', sa.Numeric(12, 2), nullable=True),
        sa.Column('holiday_allowance_rate', sa.Numeric(5, 4), nullable=True),
        sa.Column('tax_table', sa.String(length=10), nullable=True),
        sa.Column('tax_credit', sa.Boolean(), nullable=True),
        sa.Column('is_dga', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('company_id', 'employee_number', name='uq_employee_company_number'),
    )
    op.create_index('ix_employees_company_id', 'employees', ['company_id'])
    op.create_index('ix_employees_user_id', 'employees', ['user_id'])
    op.create_index('ix_employees_company_active', 'employees', ['company_id', 'is_active'])


def downgrade() -> None:
    op.drop_index('ix_employees_company_active', table_name='employees')
    op.drop_index('ix_employees_user_id', table_name='employees')
    op.drop_index('ix_employees_company_id', table_name='employees')
    op.drop_table('employees')
