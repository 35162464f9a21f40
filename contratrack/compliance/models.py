"""SQLAlchemy models for the contravention / points system."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, Date, DateTime, Numeric, Text, ForeignKey,
    Enum, JSON, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship

from contratrack.db import Base
from contratrack.permissions import Role
from .history import EntryKind


class Severity(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ContraventionStatus(str, PyEnum):
    PENDING_UPLOAD = "PENDING_UPLOAD"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_REVIEW = "PENDING_REVIEW"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    VOIDED = "VOIDED"


# contraventions in these states carry no points
VOIDED_STATUSES = frozenset({ContraventionStatus.VOIDED})


class TrainingStatus(str, PyEnum):
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"
    WAIVED = "WAIVED"


class ApprovalStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    # closed because another approver decided first
    SUPERSEDED = "SUPERSEDED"


RoleEnum = Enum(Role, name='user_role')
SeverityEnum = Enum(Severity, name='contravention_severity')
ContraventionStatusEnum = Enum(ContraventionStatus, name='contravention_status')
TrainingStatusEnum = Enum(TrainingStatus, name='training_status')
ApprovalStatusEnum = Enum(ApprovalStatus, name='approval_status')
EntryKindEnum = Enum(EntryKind, name='points_entry_kind', values_callable=lambda e: [m.value for m in e])


class Employee(Base):
    __tablename__ = 'employees'
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(RoleEnum, nullable=False, default=Role.USER)
    is_active = Column(Boolean, default=True, nullable=False)
    telegram_chat_id = Column(BigInteger, nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    points = relationship('EmployeePoints', uselist=False, back_populates='employee')


class ContraventionType(Base):
    __tablename__ = 'contravention_types'
    id = Column(Integer, primary_key=True)
    category = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    default_severity = Column(SeverityEnum, nullable=False, default=Severity.LOW)
    default_points = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)


class Contravention(Base):
    __tablename__ = 'contraventions'
    id = Column(Integer, primary_key=True)
    reference_no = Column(String(32), nullable=False, unique=True)
    employee_id = Column(Integer, ForeignKey('employees.id'), nullable=False, index=True)
    logged_by_id = Column(Integer, ForeignKey('employees.id'), nullable=False)
    type_id = Column(Integer, ForeignKey('contravention_types.id'), nullable=False)
    severity = Column(SeverityEnum, nullable=False)
    # frozen at creation; later type edits never touch it
    points = Column(Integer, nullable=False, default=0)
    incident_date = Column(Date, nullable=False)
    value_sgd = Column(Numeric(12, 2), nullable=True)
    vendor = Column(String(255), nullable=True)
    authorizer_email = Column(String(255), nullable=True)
    approval_doc_url = Column(Text, nullable=True)
    status = Column(ContraventionStatusEnum, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    justification = Column(Text, nullable=True)
    mitigation = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    completed_by_id = Column(Integer, ForeignKey('employees.id'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    employee = relationship('Employee', foreign_keys=[employee_id])
    logged_by = relationship('Employee', foreign_keys=[logged_by_id])
    type = relationship('ContraventionType')
    approval_requests = relationship(
        'ApprovalRequest', back_populates='contravention',
        cascade='all, delete-orphan', order_by='ApprovalRequest.id',
    )
    __table_args__ = (
        CheckConstraint('points >= 0', name='ck_contraventions_points_nonneg'),
        Index('idx_contraventions_employee_status', 'employee_id', 'status'),
    )


class EmployeePoints(Base):
    __tablename__ = 'employee_points'
    id = Column(Integer, primary_key=True)
    employee_id = Column(Integer, ForeignKey('employees.id'), nullable=False, unique=True)
    total_points = Column(Integer, nullable=False, default=0)
    # String so rows written under older matrices (LEVEL_4/5) still load
    current_level = Column(String(20), nullable=True)
    # LEVEL_3 is held once performance impact was established
    performance_impact = Column(Boolean, nullable=False, default=False)
    last_calculated = Column(DateTime, default=datetime.utcnow)
    employee = relationship('Employee', back_populates='points')
    history = relationship('PointsHistory', order_by='PointsHistory.id', back_populates='ledger')
    __table_args__ = (
        CheckConstraint('total_points >= 0', name='ck_employee_points_nonneg'),
    )


class PointsHistory(Base):
    __tablename__ = 'points_history'
    id = Column(Integer, primary_key=True)
    ledger_id = Column(Integer, ForeignKey('employee_points.id'), nullable=False)
    employee_id = Column(Integer, nullable=False, index=True)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    kind = Column(EntryKindEnum, nullable=False)
    delta = Column(Integer, nullable=False)
    # plain columns: history outlives deleted contraventions
    contravention_id = Column(Integer, nullable=True)
    contravention_ref = Column(String(32), nullable=True)
    reason = Column(Text, nullable=False)
    ledger = relationship('EmployeePoints', back_populates='history')
    __table_args__ = (
        Index('idx_points_history_employee_time', 'employee_id', 'occurred_at'),
    )


class Escalation(Base):
    __tablename__ = 'escalations'
    id = Column(Integer, primary_key=True)
    employee_id = Column(Integer, ForeignKey('employees.id'), nullable=False, index=True)
    level = Column(String(20), nullable=False)
    trigger_points = Column(Integer, nullable=False)
    actions_required = Column(JSON, default=list)
    actions_completed = Column(JSON, default=list)
    due_date = Column(DateTime, nullable=False)
    triggered_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    employee = relationship('Employee')


class Course(Base):
    __tablename__ = 'courses'
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_mandatory = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class TrainingRecord(Base):
    __tablename__ = 'training_records'
    id = Column(Integer, primary_key=True)
    employee_id = Column(Integer, ForeignKey('employees.id'), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey('courses.id'), nullable=False)
    status = Column(TrainingStatusEnum, nullable=False, default=TrainingStatus.ASSIGNED)
    assigned_at = Column(DateTime, default=datetime.utcnow)
    due_date = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    points_credited = Column(Boolean, nullable=False, default=False)
    employee = relationship('Employee')
    course = relationship('Course')
    __table_args__ = (
        UniqueConstraint('employee_id', 'course_id', name='uq_training_employee_course'),
    )


class ApprovalRequest(Base):
    __tablename__ = 'approval_requests'
    id = Column(Integer, primary_key=True)
    contravention_id = Column(Integer, ForeignKey('contraventions.id', ondelete='CASCADE'), nullable=False)
    approver_id = Column(Integer, ForeignKey('employees.id'), nullable=False, index=True)
    status = Column(ApprovalStatusEnum, nullable=False, default=ApprovalStatus.PENDING)
    reviewed_by_id = Column(Integer, ForeignKey('employees.id'), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    contravention = relationship('Contravention', back_populates='approval_requests')
    approver = relationship('Employee', foreign_keys=[approver_id])
    __table_args__ = (
        UniqueConstraint('contravention_id', 'approver_id', name='uq_approval_contravention_approver'),
    )


class ReferenceCounter(Base):
    __tablename__ = 'reference_counters'
    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)


class FiscalReset(Base):
    __tablename__ = 'fiscal_resets'
    id = Column(Integer, primary_key=True)
    label = Column(String(16), nullable=False, unique=True)
    run_at = Column(DateTime, default=datetime.utcnow)
    employees_processed = Column(Integer, nullable=False, default=0)
    points_removed = Column(Integer, nullable=False, default=0)
