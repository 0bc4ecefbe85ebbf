"""payroll database: runs and records

Revision ID: 0001_payroll_initial
Revises:
Create Date: 2025-11-03 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_payroll_initial'
down_revision = None
branch_labels = None
depends_on = None

_MONEY_COLUMNS = (
    'base_pay',
    'overtime_pay',
    'bonus',
    'gross_salary',
    'aow_contribution',
    'wlz_contribution',
    'ww_contribution',
    'wia_contribution',
    'total_employee_contributions',
    'employer_aow',
    'employer_wlz',
    'employer_ww',
    'employer_wia',
    'employer_awf',
    'employer_aof',
    'employer_zvw',
    'total_employer_contributions',
    'holiday_allowance',
    'gross_after_contributions',
)


def upgrade() -> None:
    op.create_table(
        'payroll_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('employee_count', sa.Integer(), nullable=True),
        sa.Column('total_gross', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_employee_contributions', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_employer_contributions', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_holiday_allowance', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('finalized_by', sa.Integer(), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('company_id', 'year', 'month', name='uq_payroll_run_company_period'),
    )
    op.create_index('ix_payroll_runs_company_id', 'payroll_runs', ['company_id'])

    op.create_table(
        'payroll_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('employee_id', sa.Integer(), nullable=False),
        sa.Column('employee_number', sa.String(length=20), nullable=True),
        sa.Column('employee_name', sa.String(length=240), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('period', sa.String(length=7), nullable=False),
        sa.Column('salary_type', sa.String(length=10), nullable=True),
        sa.Column('hours_worked', sa.Numeric(7, 2), nullable=True),
        sa.Column('overtime_hours', sa.Numeric(7, 2), nullable=True),
        sa.Column('pro_rata_factor', sa.Numeric(6, 4), nullable=True),
        *[sa.Column(name, sa.Numeric(12, 2), nullable=True) for name in _MONEY_COLUMNS],
        sa.Column('minimum_wage_monthly', sa.Numeric(12, 2), nullable=True),
        sa.Column('below_minimum_wage', sa.Boolean(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['payroll_runs.id']),
        sa.UniqueConstraint('company_id', 'employee_id', 'year', 'month', name='uq_payroll_record_employee_period'),
    )
    op.create_index('ix_payroll_records_run_id', 'payroll_records', ['run_id'])
    op.create_index('ix_payroll_records_employee_id', 'payroll_records', ['employee_id'])
    op.create_index('ix_payroll_records_company_period', 'payroll_records', ['company_id', 'year', 'month'])


def downgrade() -> None:
    op.drop_table('payroll_records')
    op.drop_index('ix_payroll_runs_company_id', table_name='payroll_runs')
    op.drop_table('payroll_runs')
