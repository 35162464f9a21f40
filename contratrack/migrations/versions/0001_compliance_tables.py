"""add contravention, points and approval tables"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '0001_compliance'
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    'user_role': ('ADMIN', 'APPROVER', 'USER'),
    'contravention_severity': ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL'),
    'contravention_status': ('PENDING_UPLOAD', 'PENDING_APPROVAL', 'PENDING_REVIEW', 'COMPLETED', 'REJECTED', 'VOIDED'),
    'training_status': ('ASSIGNED', 'IN_PROGRESS', 'COMPLETED', 'OVERDUE', 'WAIVED'),
    'approval_status': ('PENDING', 'APPROVED', 'REJECTED', 'SUPERSEDED'),
    'points_entry_kind': ('add', 'credit', 'decay', 'reset', 'reversal'),
}


def _enum(name):
    # PostgreSQL types are created once up front; columns only reference them
    return sa.Enum(*ENUMS[name], name=name).with_variant(
        postgresql.ENUM(*ENUMS[name], name=name, create_type=False), "postgresql",
    )


def upgrade():
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('role', _enum('user_role'), nullable=False, server_default='USER'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('telegram_chat_id', sa.BigInteger, unique=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        'contravention_types',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('default_severity', _enum('contravention_severity'), nullable=False, server_default='LOW'),
        sa.Column('default_points', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table(
        'contraventions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('reference_no', sa.String(32), nullable=False, unique=True),
        sa.Column('employee_id', sa.Integer, sa.ForeignKey('employees.id'), nullable=False, index=True),
        sa.Column('logged_by_id', sa.Integer, sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('type_id', sa.Integer, sa.ForeignKey('contravention_types.id'), nullable=False),
        sa.Column('severity', _enum('contravention_severity'), nullable=False),
        sa.Column('points', sa.Integer, nullable=False, server_default='0'),
        sa.Column('incident_date', sa.Date, nullable=False),
        sa.Column('value_sgd', sa.Numeric(12, 2)),
        sa.Column('vendor', sa.String(255)),
        sa.Column('authorizer_email', sa.String(255)),
        sa.Column('approval_doc_url', sa.Text),
        sa.Column('status', _enum('contravention_status'), nullable=False, index=True),
        sa.Column('description', sa.Text, nullable=False, server_default=''),
        sa.Column('justification', sa.Text),
        sa.Column('mitigation', sa.Text),
        sa.Column('summary', sa.Text),
        sa.Column('resolved_at', sa.DateTime),
        sa.Column('completed_by_id', sa.Integer, sa.ForeignKey('employees.id')),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('points >= 0', name='ck_contraventions_points_nonneg'),
    )
    op.create_index('idx_contraventions_employee_status', 'contraventions', ['employee_id', 'status'])
    op.create_table(
        'employee_points',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('employee_id', sa.Integer, sa.ForeignKey('employees.id'), nullable=False, unique=True),
        sa.Column('total_points', sa.Integer, nullable=False, server_default='0'),
        sa.Column('current_level', sa.String(20)),
        sa.Column('performance_impact', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('last_calculated', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('total_points >= 0', name='ck_employee_points_nonneg'),
    )
    op.create_table(
        'points_history',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('ledger_id', sa.Integer, sa.ForeignKey('employee_points.id'), nullable=False),
        sa.Column('employee_id', sa.Integer, nullable=False, index=True),
        sa.Column('occurred_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('kind', _enum('points_entry_kind'), nullable=False),
        sa.Column('delta', sa.Integer, nullable=False),
        sa.Column('contravention_id', sa.Integer),
        sa.Column('contravention_ref', sa.String(32)),
        sa.Column('reason', sa.Text, nullable=False),
    )
    op.create_index('idx_points_history_employee_time', 'points_history', ['employee_id', 'occurred_at'])
    op.create_table(
        'escalations',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('employee_id', sa.Integer, sa.ForeignKey('employees.id'), nullable=False, index=True),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('trigger_points', sa.Integer, nullable=False),
        sa.Column('actions_required', sa.JSON),
        sa.Column('actions_completed', sa.JSON),
        sa.Column('due_date', sa.DateTime, nullable=False),
        sa.Column('triggered_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('notes', sa.Text),
    )
    op.create_table(
        'courses',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('is_mandatory', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        'training_records',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('employee_id', sa.Integer, sa.ForeignKey('employees.id'), nullable=False, index=True),
        sa.Column('course_id', sa.Integer, sa.ForeignKey('courses.id'), nullable=False),
        sa.Column('status', _enum('training_status'), nullable=False, server_default='ASSIGNED'),
        sa.Column('assigned_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('due_date', sa.DateTime, nullable=False),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('points_credited', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.UniqueConstraint('employee_id', 'course_id', name='uq_training_employee_course'),
    )
    op.create_table(
        'approval_requests',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('contravention_id', sa.Integer, sa.ForeignKey('contraventions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('approver_id', sa.Integer, sa.ForeignKey('employees.id'), nullable=False, index=True),
        sa.Column('status', _enum('approval_status'), nullable=False, server_default='PENDING'),
        sa.Column('reviewed_by_id', sa.Integer, sa.ForeignKey('employees.id')),
        sa.Column('reviewed_at', sa.DateTime),
        sa.Column('review_notes', sa.Text),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('contravention_id', 'approver_id', name='uq_approval_contravention_approver'),
    )
    op.create_table(
        'reference_counters',
        sa.Column('year', sa.Integer, primary_key=True, autoincrement=False),
        sa.Column('last_value', sa.Integer, nullable=False, server_default='0'),
    )
    op.create_table(
        'fiscal_resets',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('label', sa.String(16), nullable=False, unique=True),
        sa.Column('run_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('employees_processed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('points_removed', sa.Integer, nullable=False, server_default='0'),
    )


def downgrade():
    op.drop_table('fiscal_resets')
    op.drop_table('reference_counters')
    op.drop_table('approval_requests')
    op.drop_table('training_records')
    op.drop_table('courses')
    op.drop_table('escalations')
    op.drop_index('idx_points_history_employee_time', table_name='points_history')
    op.drop_table('points_history')
    op.drop_table('employee_points')
    op.drop_index('idx_contraventions_employee_status', table_name='contraventions')
    op.drop_table('contraventions')
    op.drop_table('contravention_types')
    op.drop_table('employees')
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ENUMS:
            sa.Enum(name=name).drop(bind, checkfirst=True)
