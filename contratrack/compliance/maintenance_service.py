"""Administrative and scheduled jobs over every ledger.

Each job walks employees one at a time and commits per employee. A failure
is logged and collected into the job's ``errors`` list; the remaining
employees are still processed, so an interrupted run can simply be started
again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .escalation_service import EscalationRecorder
from .fiscal_year import days_until_next_fiscal_year, fiscal_year_boundaries, fiscal_year_label
from .history import EntryKind
from .models import (
    Contravention, Employee, EmployeePoints, Escalation, FiscalReset, PointsHistory, VOIDED_STATUSES,
)
from .notifications import NotificationDispatcher
from .points_ledger import PointsLedger, ResetSummary
from .training_service import TrainingTrigger
from .transaction import operation

log = logging.getLogger(__name__)

LEGACY_NOTE = "Auto-archived: Migrated to new 3-level escalation system"
MISMATCH_NOTE = "Auto-archived: Level did not match points (corrected escalation matrix)."


@dataclass
class ReconcileSummary:
    employees_processed: int = 0
    employees_fixed: int = 0
    details: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)


@dataclass
class EscalationRepairSummary:
    employees_updated: int = 0
    escalations_archived: int = 0
    new_escalations_created: int = 0
    details: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)


class MaintenanceService:
    def __init__(
        self,
        session: Session,
        ledger: PointsLedger,
        recorder: EscalationRecorder,
        training: TrainingTrigger,
        notifications: Optional[NotificationDispatcher] = None,
        fiscal_start_month: int = 4,
        training_threshold: int = 3,
        decay_enabled: bool = False,
        decay_dormant_days: int = 90,
        decay_points: int = 1,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.ledger = ledger
        self.policy = ledger.policy
        self.recorder = recorder
        self.training = training
        self.notifications = notifications or NotificationDispatcher()
        self.fiscal_start_month = fiscal_start_month
        self.training_threshold = training_threshold
        self.decay_enabled = decay_enabled
        self.decay_dormant_days = decay_dormant_days
        self.decay_points = decay_points
        self.now = now

    def _today(self, today: Optional[date]) -> date:
        return today or self.now().date()

    def _fail(self, errors: List[dict], job: str, employee_id: int, exc: Exception) -> None:
        log.error("%s failed employee=%s: %s", job, employee_id, exc)
        errors.append({"employee_id": employee_id, "error": str(exc)})

    # --- fiscal year ---
    def reset_points_for_new_fiscal_year(self, today: Optional[date] = None, force: bool = False) -> ResetSummary:
        """Zero every ledger once per fiscal year.

        The run is audited in ``fiscal_resets`` only when every employee
        succeeded; until then a re-run picks up the ledgers still holding
        points. ``force`` runs again for a label that is already audited.
        """
        label = fiscal_year_label(self._today(today), self.fiscal_start_month)
        audit = self.session.query(FiscalReset).filter(FiscalReset.label == label).first()
        if audit is not None and not force:
            log.info("fiscal reset %s already done at %s; skipping", label, audit.run_at)
            return ResetSummary(label=label, skipped=True)

        summary = self.ledger.reset_all(label)
        if summary.errors:
            log.warning("fiscal reset %s incomplete (%s errors); not audited", label, len(summary.errors))
            return summary
        with operation(self.session, self.notifications, "Fiscal reset for this year was recorded concurrently"):
            if audit is None:
                audit = FiscalReset(label=label, employees_processed=0, points_removed=0)
                self.session.add(audit)
            audit.run_at = self.now()
            audit.employees_processed += summary.employees_processed
            audit.points_removed += summary.points_removed
        return summary

    def reset_cutoff(self, today: Optional[date] = None) -> Optional[datetime]:
        """When the current fiscal year's reset last ran, or None if it has not."""
        label = fiscal_year_label(self._today(today), self.fiscal_start_month)
        audit = self.session.query(FiscalReset).filter(FiscalReset.label == label).first()
        return audit.run_at if audit is not None else None

    def fiscal_year_status(self, today: Optional[date] = None) -> dict:
        today = self._today(today)
        start, end = fiscal_year_boundaries(today, self.fiscal_start_month)
        label = fiscal_year_label(today, self.fiscal_start_month)
        audit = self.session.query(FiscalReset).filter(FiscalReset.label == label).first()
        holders = (
            self.session.query(EmployeePoints, Employee)
            .join(Employee, Employee.id == EmployeePoints.employee_id)
            .filter(EmployeePoints.total_points > 0)
            .order_by(EmployeePoints.total_points.desc(), Employee.id)
            .all()
        )
        return {
            "current_fiscal_year": label,
            "fiscal_year_start": start.isoformat(),
            "fiscal_year_end": end.isoformat(),
            "days_until_reset": days_until_next_fiscal_year(today, self.fiscal_start_month),
            "reset_done": audit is not None,
            "last_reset_at": audit.run_at.isoformat() if audit and audit.run_at else None,
            "employees_with_points": [
                {
                    "employee_id": emp.id,
                    "employee_name": emp.name,
                    "total_points": pts.total_points,
                    "level": pts.current_level,
                }
                for pts, emp in holders
            ],
        }

    # --- reconciliation ---
    def reconcile_from_contraventions(self, since=None) -> ReconcileSummary:
        """Rebuild each active employee's ledger from their non-voided contraventions.

        ``since`` (a date or datetime) limits the authoritative set to
        contraventions created at or after it, normally the moment the
        current fiscal year's reset ran. Ledgers that already match are not
        touched.
        """
        if since is not None and not isinstance(since, datetime):
            since = datetime.combine(since, datetime.min.time())
        summary = ReconcileSummary()
        employee_ids = [
            row.id for row in
            self.session.query(Employee.id).filter(Employee.is_active == True).order_by(Employee.id).all()  # noqa: E712
        ]
        for employee_id in employee_ids:
            try:
                with operation(self.session, self.notifications):
                    query = (
                        self.session.query(Contravention)
                        .filter(
                            Contravention.employee_id == employee_id,
                            Contravention.status.notin_(list(VOIDED_STATUSES)),
                        )
                        .order_by(Contravention.id)
                    )
                    if since is not None:
                        query = query.filter(Contravention.created_at >= since)
                    detail = self.ledger.reconcile_employee(employee_id, query.all())
                    if detail is not None:
                        self.recorder.record_if_needed(
                            employee_id, detail["previous_level"], detail["new_level"], detail["new_points"],
                        )
                        if detail["new_points"] >= self.training_threshold:
                            self.training.trigger(employee_id)
            except Exception as e:
                self._fail(summary.errors, "reconcile", employee_id, e)
                continue
            summary.employees_processed += 1
            if detail is not None:
                summary.employees_fixed += 1
                summary.details.append(detail)
        log.info("reconcile done: processed=%s fixed=%s errors=%s",
                 summary.employees_processed, summary.employees_fixed, len(summary.errors))
        return summary

    # --- escalation repair ---
    def recalculate_all_escalations(self) -> EscalationRepairSummary:
        """Re-derive stored levels and repair open escalations.

        Open escalations at levels the policy no longer knows, and LEVEL_1 /
        LEVEL_2 escalations whose trigger points map to another level, are
        archived. Every employee whose level has no open escalation gets one.
        """
        summary = EscalationRepairSummary()
        ledgers = self.session.query(EmployeePoints).order_by(EmployeePoints.employee_id).all()
        targets = []
        for row in ledgers:
            employee_id = row.employee_id
            try:
                with operation(self.session, self.notifications):
                    old_level = row.current_level
                    new_level = self.policy.resolve(row.total_points, row.performance_impact)
                    changed = self.ledger.set_level(employee_id, new_level)
                    new_value = new_level.value if new_level else None
                    detail = {
                        "employee_id": employee_id,
                        "old_level": old_level,
                        "new_level": new_value,
                        "points": row.total_points,
                        "has_completed_training": self.ledger.has_completed_training(employee_id),
                    }
            except Exception as e:
                self._fail(summary.errors, "escalation recalculation", employee_id, e)
                continue
            if changed:
                summary.employees_updated += 1
            summary.details.append(detail)
            if new_level is not None:
                targets.append((employee_id, new_level, detail["points"]))

        open_escalations = (
            self.session.query(Escalation.id, Escalation.employee_id)
            .filter(Escalation.completed_at.is_(None))
            .order_by(Escalation.id)
            .all()
        )
        for escalation_id, employee_id in open_escalations:
            try:
                with operation(self.session, self.notifications):
                    escalation = self.session.get(Escalation, escalation_id)
                    note = self._archive_note(escalation)
                    if note is not None:
                        self.recorder.archive(escalation, note)
            except Exception as e:
                self._fail(summary.errors, "escalation archive", employee_id, e)
                continue
            if note is not None:
                summary.escalations_archived += 1

        for employee_id, level, points in targets:
            try:
                with operation(self.session, self.notifications):
                    if self.recorder.open_escalation(employee_id, level) is None:
                        self.recorder.create(employee_id, level, points)
                        summary.new_escalations_created += 1
            except Exception as e:
                self._fail(summary.errors, "escalation creation", employee_id, e)
        log.info("escalations recalculated: updated=%s archived=%s created=%s errors=%s",
                 summary.employees_updated, summary.escalations_archived,
                 summary.new_escalations_created, len(summary.errors))
        return summary

    def _archive_note(self, escalation: Escalation) -> Optional[str]:
        """Why an open escalation no longer fits the matrix, or None if it does."""
        if not self.policy.is_known(escalation.level):
            return LEGACY_NOTE
        if escalation.level == "LEVEL_3":
            return None
        expected = self.policy.level_for(escalation.trigger_points)
        if expected is None or expected.value != escalation.level:
            return MISMATCH_NOTE
        return None

    # --- legacy decay ---
    def run_decay(self, today: Optional[date] = None) -> List[dict]:
        """Remove ``decay_points`` from ledgers untouched for the dormant period."""
        if not self.decay_enabled:
            log.info("points decay disabled; skipping")
            return []
        cutoff = datetime.combine(self._today(today), datetime.min.time()) - timedelta(days=self.decay_dormant_days)
        last_add = (
            self.session.query(PointsHistory.employee_id, func.max(PointsHistory.occurred_at).label("last_add"))
            .filter(PointsHistory.kind == EntryKind.ADD)
            .group_by(PointsHistory.employee_id)
            .subquery()
        )
        dormant = [
            row.employee_id for row in
            self.session.query(EmployeePoints.employee_id)
            .outerjoin(last_add, last_add.c.employee_id == EmployeePoints.employee_id)
            .filter(
                EmployeePoints.total_points > 0,
                EmployeePoints.last_calculated < cutoff,
                (last_add.c.last_add.is_(None)) | (last_add.c.last_add < cutoff),
            )
            .order_by(EmployeePoints.employee_id)
            .all()
        ]
        results = []
        for employee_id in dormant:
            try:
                with operation(self.session, self.notifications):
                    result = self.ledger.apply_decay(
                        employee_id, self.decay_points,
                        f"Decay after {self.decay_dormant_days} days without new contraventions",
                    )
            except Exception as e:
                log.error("decay failed employee=%s: %s", employee_id, e)
                results.append({"employee_id": employee_id, "error": str(e)})
                continue
            results.append({"employee_id": employee_id, "removed": -result.applied_delta, "new_total": result.new_total})
        log.info("decay applied to %s employees", len(results))
        return results
