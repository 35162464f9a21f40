"""Mandatory-training assignment and completion."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, StateConflictError
from .models import Course, Employee, TrainingRecord, TrainingStatus
from .notifications import TRAINING_ASSIGNED, TRAINING_OVERDUE, NotificationDispatcher
from .points_ledger import PointsLedger
from .transaction import operation

log = logging.getLogger(__name__)

OPEN_STATUSES = (TrainingStatus.ASSIGNED, TrainingStatus.IN_PROGRESS)


class TrainingTrigger:
    """Assigns the mandatory course and routes completions through the ledger.

    :meth:`complete` is the only place a training record becomes COMPLETED,
    which keeps the ledger credit at most once per record.
    """

    def __init__(
        self,
        session: Session,
        ledger: PointsLedger,
        notifications: Optional[NotificationDispatcher] = None,
        due_days: int = 30,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.ledger = ledger
        self.notifications = notifications or NotificationDispatcher()
        self.due_days = due_days
        self.now = now

    def mandatory_course(self) -> Optional[Course]:
        return (
            self.session.query(Course)
            .filter(Course.is_active == True, Course.is_mandatory == True)  # noqa: E712
            .order_by(Course.id)
            .first()
        )

    def _get(self, training_id: int) -> TrainingRecord:
        record = self.session.get(TrainingRecord, training_id)
        if record is None:
            raise NotFoundError("TrainingRecord", training_id)
        return record

    # --- assignment ---
    def trigger(self, employee_id: int) -> Optional[TrainingRecord]:
        """Assign the mandatory course once per employee.

        Runs inside the caller's transaction. No-op when no mandatory course
        is configured or a record for that course already exists in any
        status.
        """
        course = self.mandatory_course()
        if course is None:
            log.info("no mandatory course configured; training not assigned employee=%s", employee_id)
            return None
        existing = (
            self.session.query(TrainingRecord)
            .filter(TrainingRecord.employee_id == employee_id, TrainingRecord.course_id == course.id)
            .first()
        )
        if existing is not None:
            return None
        now = self.now()
        record = TrainingRecord(
            employee_id=employee_id,
            course_id=course.id,
            status=TrainingStatus.ASSIGNED,
            assigned_at=now,
            due_date=now + timedelta(days=self.due_days),
            points_credited=False,
        )
        self.session.add(record)
        self.session.flush()
        log.info("training assigned employee=%s course=%s due=%s", employee_id, course.id, record.due_date)
        self.notifications.queue(
            employee_id, TRAINING_ASSIGNED,
            course=course.name, due_date=record.due_date.date().isoformat(),
        )
        return record

    def assign(self, employee_id: int, course_id: int, due_date: Optional[datetime] = None) -> TrainingRecord:
        """Administrative assignment; re-opens a finished record explicitly."""
        with operation(self.session, self.notifications, "Training already assigned to this employee"):
            if self.session.get(Employee, employee_id) is None:
                raise NotFoundError("Employee", employee_id)
            course = self.session.get(Course, course_id)
            if course is None:
                raise NotFoundError("Course", course_id)
            now = self.now()
            due = due_date or now + timedelta(days=self.due_days)
            record = (
                self.session.query(TrainingRecord)
                .filter(TrainingRecord.employee_id == employee_id, TrainingRecord.course_id == course_id)
                .first()
            )
            if record is not None and record.status in OPEN_STATUSES:
                raise ConflictError("Training already assigned to this employee")
            if record is None:
                record = TrainingRecord(employee_id=employee_id, course_id=course_id)
                self.session.add(record)
            record.status = TrainingStatus.ASSIGNED
            record.assigned_at = now
            record.due_date = due
            record.completed_at = None
            # explicit reset: a re-assigned course may earn its credit again
            record.points_credited = False
            self.session.flush()
            self.notifications.queue(
                employee_id, TRAINING_ASSIGNED, course=course.name, due_date=due.date().isoformat(),
            )
        return record

    # --- status changes ---
    def start(self, training_id: int) -> TrainingRecord:
        with operation(self.session, self.notifications):
            record = self._get(training_id)
            if record.status != TrainingStatus.ASSIGNED:
                raise StateConflictError("TrainingRecord", record.status.value, ["ASSIGNED"], "start")
            record.status = TrainingStatus.IN_PROGRESS
        return record

    def waive(self, training_id: int) -> TrainingRecord:
        with operation(self.session, self.notifications):
            record = self._get(training_id)
            if record.status in (TrainingStatus.COMPLETED, TrainingStatus.WAIVED):
                raise StateConflictError(
                    "TrainingRecord", record.status.value, ["ASSIGNED", "IN_PROGRESS", "OVERDUE"], "waive",
                )
            record.status = TrainingStatus.WAIVED
        log.info("training waived id=%s employee=%s", record.id, record.employee_id)
        return record

    def complete(self, training_id: int) -> TrainingRecord:
        """Mark training completed and apply the ledger credit once."""
        with operation(self.session, self.notifications):
            record = self._get(training_id)
            allowed = OPEN_STATUSES + (TrainingStatus.OVERDUE,)
            if record.status not in allowed:
                raise StateConflictError(
                    "TrainingRecord", record.status.value, [s.value for s in allowed], "complete",
                )
            record.status = TrainingStatus.COMPLETED
            record.completed_at = self.now()
            if not record.points_credited:
                self.ledger.apply_credit(record.employee_id, record.id)
        log.info("training completed id=%s employee=%s", record.id, record.employee_id)
        return record

    def mark_overdue(self, today: Optional[date] = None) -> List[TrainingRecord]:
        today = today or self.now().date()
        cutoff = datetime.combine(today, datetime.min.time())
        with operation(self.session, self.notifications):
            records = (
                self.session.query(TrainingRecord)
                .filter(TrainingRecord.status.in_(OPEN_STATUSES), TrainingRecord.due_date < cutoff)
                .all()
            )
            for record in records:
                record.status = TrainingStatus.OVERDUE
                self.notifications.queue(
                    record.employee_id, TRAINING_OVERDUE,
                    course=record.course.name if record.course else None,
                    due_date=record.due_date.date().isoformat(),
                )
        if records:
            log.info("marked %s training records overdue", len(records))
        return records
