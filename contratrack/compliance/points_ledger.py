"""Per-employee points ledger.

One ``employee_points`` row per employee holds the running total, the stored
level and the sticky performance-impact flag; ``points_history`` holds one
typed row per change. Every mutation runs as read-modify-write on a row that
is write-locked first (``UPDATE`` no-op + ``SELECT ... FOR UPDATE``), so two
concurrent transactions against the same employee serialise in the database
instead of losing an update.

Single-employee mutations flush but never commit: the calling operation owns
the transaction. :meth:`PointsLedger.reset_all` is a batch job and commits
per employee.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from contratrack.db import insert_ignore
from .errors import ConflictError, NotFoundError, ValidationError
from .escalation_policy import EscalationPolicy, Level
from .history import EntryKind, LedgerEntry
from .models import (
    Contravention, Employee, EmployeePoints, PointsHistory, TrainingRecord, TrainingStatus,
)

log = logging.getLogger(__name__)


def _value(level) -> Optional[str]:
    if level is None:
        return None
    return level.value if isinstance(level, Level) else str(level)


@dataclass
class PointsResult:
    employee_id: int
    new_total: int
    applied_delta: int
    previous_level: Optional[str]
    new_level: Optional[str]
    performance_impact: bool = False

    @property
    def level_changed(self) -> bool:
        return self.previous_level != self.new_level


@dataclass
class ResetSummary:
    label: str
    skipped: bool = False
    employees_processed: int = 0
    points_removed: int = 0
    results: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)


class PointsLedger:
    """Owns every write to ``employee_points`` and ``points_history``."""

    def __init__(
        self,
        session: Session,
        policy: EscalationPolicy,
        training_credit: int = 1,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.policy = policy
        self.training_credit = training_credit
        self.now = now

    # --- loading ---
    def get(self, employee_id: int) -> Optional[EmployeePoints]:
        return (
            self.session.query(EmployeePoints)
            .filter(EmployeePoints.employee_id == employee_id)
            .first()
        )

    def ensure(self, employee_id: int) -> EmployeePoints:
        """Return the ledger row, creating an empty one on first use."""
        if self.session.get(Employee, employee_id) is None:
            raise NotFoundError("Employee", employee_id)
        self._insert_missing(employee_id)
        return self.get(employee_id)

    def _insert_missing(self, employee_id: int) -> None:
        insert_ignore(
            self.session, EmployeePoints, ["employee_id"],
            employee_id=employee_id, total_points=0, performance_impact=False,
            last_calculated=self.now(),
        )

    def _locked(self, employee_id: int) -> EmployeePoints:
        """Load the ledger row holding a write lock until the transaction ends."""
        if self.session.get(Employee, employee_id) is None:
            raise NotFoundError("Employee", employee_id)
        self._insert_missing(employee_id)
        # the no-op write takes the lock on backends without FOR UPDATE (SQLite)
        self.session.execute(
            update(EmployeePoints)
            .where(EmployeePoints.employee_id == employee_id)
            .values(total_points=EmployeePoints.total_points)
            .execution_options(synchronize_session=False)
        )
        return (
            self.session.query(EmployeePoints)
            .filter(EmployeePoints.employee_id == employee_id)
            .with_for_update()
            .populate_existing()
            .one()
        )

    def has_completed_training(self, employee_id: int) -> bool:
        return (
            self.session.query(TrainingRecord.id)
            .filter(
                TrainingRecord.employee_id == employee_id,
                TrainingRecord.status == TrainingStatus.COMPLETED,
            )
            .first()
            is not None
        )

    def _trained_at(self, employee_id: int) -> Optional[datetime]:
        """When the employee first completed a training, or None if never."""
        rows = (
            self.session.query(TrainingRecord.completed_at)
            .filter(
                TrainingRecord.employee_id == employee_id,
                TrainingRecord.status == TrainingStatus.COMPLETED,
            )
            .all()
        )
        if not rows:
            return None
        return min(row.completed_at or datetime.min for row in rows)

    def derive_impact(self, employee_id: int, offenses: Iterable[Tuple[int, Optional[datetime]]]) -> bool:
        """Whether any single ``(points, occurred_at)`` offense warrants LEVEL_3 on its own."""
        trained_at = self._trained_at(employee_id)
        for points, occurred_at in offenses:
            if points <= 0:
                continue
            after_training = trained_at is not None and (occurred_at is None or occurred_at >= trained_at)
            if self.policy.is_performance_impact(points, after_training):
                return True
        return False

    def _surviving_offenses(self, employee_id: int) -> List[Tuple[int, Optional[datetime]]]:
        """Adds since the last reset whose contravention has not been reversed."""
        loose, by_contravention = [], {}
        for row in self.history(employee_id):
            if row.kind == EntryKind.RESET:
                loose, by_contravention = [], {}
            elif row.kind == EntryKind.ADD:
                if row.contravention_id is None:
                    loose.append((row.delta, row.occurred_at))
                else:
                    by_contravention[row.contravention_id] = row
            elif row.kind == EntryKind.REVERSAL and row.contravention_id is not None:
                by_contravention.pop(row.contravention_id, None)
        offenses = list(loose)
        for contravention_id, row in by_contravention.items():
            # reconciled adds carry the reconcile time; the offense time is the contravention's
            contravention = self.session.get(Contravention, contravention_id)
            created = contravention.created_at if contravention is not None else None
            offenses.append((row.delta, created or row.occurred_at))
        return offenses

    # --- mutations ---
    def add_points(
        self,
        employee_id: int,
        delta: int,
        reason: str,
        contravention_id: Optional[int] = None,
        contravention_ref: Optional[str] = None,
    ) -> PointsResult:
        """Add ``delta`` points raised by one contravention.

        The level is recomputed from the new total. A single offense above
        the policy limit, or any offense by an employee who has completed
        training, sets the sticky LEVEL_3 flag.
        """
        if delta < 0:
            raise ValidationError("points can only be removed by credit, reversal, decay or reset")
        entry = LedgerEntry.add(delta, reason, contravention_id, contravention_ref, occurred_at=self.now())
        ledger = self._locked(employee_id)
        previous_level = ledger.current_level

        impact = ledger.performance_impact
        if delta > 0 and not impact:
            impact = self.policy.is_performance_impact(delta, self.has_completed_training(employee_id))

        ledger.total_points += delta
        ledger.performance_impact = impact
        ledger.current_level = _value(self.policy.resolve(ledger.total_points, impact))
        self._append(ledger, entry)
        self.session.flush()

        log.info(
            "points add employee=%s delta=%s total=%s level=%s->%s ref=%s",
            employee_id, delta, ledger.total_points, previous_level, ledger.current_level,
            contravention_ref,
        )
        return PointsResult(
            employee_id=employee_id,
            new_total=ledger.total_points,
            applied_delta=delta,
            previous_level=previous_level,
            new_level=ledger.current_level,
            performance_impact=impact,
        )

    def apply_credit(self, employee_id: int, training_record_id: int) -> PointsResult:
        """Subtract the training credit once per training record.

        The record's ``points_credited`` flag is flipped with a conditional
        UPDATE, so a second call (even a concurrent one) raises
        :class:`ConflictError` and leaves the total untouched.
        """
        self.session.flush()
        record = self.session.get(TrainingRecord, training_record_id)
        if record is None:
            raise NotFoundError("TrainingRecord", training_record_id)
        if record.employee_id != employee_id:
            raise ValidationError("training record belongs to another employee")

        claimed = self.session.execute(
            update(TrainingRecord)
            .where(TrainingRecord.id == training_record_id, TrainingRecord.points_credited == False)  # noqa: E712
            .values(points_credited=True)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            raise ConflictError("Training credit has already been applied for this record")
        self.session.refresh(record)

        result = self._remove(
            employee_id,
            self.training_credit,
            lambda applied: LedgerEntry.credit(
                applied, f"Training completion credit ({record.course.name if record.course else 'course'})",
                occurred_at=self.now(),
            ),
        )
        log.info("points credit employee=%s training=%s total=%s", employee_id, training_record_id, result.new_total)
        return result

    def reverse_points(
        self,
        employee_id: int,
        points: int,
        reason: str,
        contravention_id: Optional[int] = None,
        contravention_ref: Optional[str] = None,
    ) -> PointsResult:
        """Take back points of a deleted, voided or reassigned contravention.

        The sticky LEVEL_3 flag is re-derived from the offenses that remain,
        so reversing the only offense that set it clears it.
        """
        if points < 0:
            raise ValidationError("reversal amount must be non-negative")
        result = self._remove(
            employee_id,
            points,
            lambda applied: LedgerEntry.reversal(
                applied, reason, contravention_id, contravention_ref, occurred_at=self.now(),
            ),
            rederive_impact=True,
        )
        log.info("points reversal employee=%s points=%s total=%s ref=%s",
                 employee_id, points, result.new_total, contravention_ref)
        return result

    def apply_decay(self, employee_id: int, points: int, reason: str) -> PointsResult:
        """Legacy dormancy decay. Never lifts a sticky LEVEL_3."""
        if points < 0:
            raise ValidationError("decay amount must be non-negative")
        result = self._remove(
            employee_id, points,
            lambda applied: LedgerEntry.decay(applied, reason, occurred_at=self.now()),
        )
        log.info("points decay employee=%s points=%s total=%s", employee_id, points, result.new_total)
        return result

    def _remove(self, employee_id: int, points: int, make_entry, rederive_impact: bool = False) -> PointsResult:
        ledger = self._locked(employee_id)
        previous_level = ledger.current_level
        # floored at zero; the entry records what was actually removed
        applied = -min(points, ledger.total_points)
        entry = make_entry(applied)
        ledger.total_points += applied
        self._append(ledger, entry)
        if rederive_impact:
            self.session.flush()
            ledger.performance_impact = self.derive_impact(employee_id, self._surviving_offenses(employee_id))
        ledger.current_level = _value(self.policy.resolve(ledger.total_points, ledger.performance_impact))
        self.session.flush()
        return PointsResult(
            employee_id=employee_id,
            new_total=ledger.total_points,
            applied_delta=applied,
            previous_level=previous_level,
            new_level=ledger.current_level,
            performance_impact=ledger.performance_impact,
        )

    def _append(self, ledger: EmployeePoints, entry: LedgerEntry) -> PointsHistory:
        ledger.last_calculated = entry.occurred_at
        row = PointsHistory(
            ledger_id=ledger.id,
            employee_id=ledger.employee_id,
            occurred_at=entry.occurred_at,
            kind=entry.kind,
            delta=entry.delta,
            contravention_id=entry.contravention_id,
            contravention_ref=entry.contravention_ref,
            reason=entry.reason,
        )
        self.session.add(row)
        return row

    # --- batch ---
    def reset_employee(self, employee_id: int, label: str) -> Optional[int]:
        """Zero one ledger. Returns the removed total, or None if already zero."""
        ledger = self._locked(employee_id)
        if ledger.total_points <= 0:
            return None
        previous = ledger.total_points
        self._append(ledger, LedgerEntry.reset(
            previous, f"Fiscal year reset ({label}) - all points reset to 0", occurred_at=self.now(),
        ))
        ledger.total_points = 0
        ledger.current_level = None
        ledger.performance_impact = False
        self.session.flush()
        return previous

    def reset_all(self, label: str) -> ResetSummary:
        """Zero every ledger holding points. Safe to re-run: zero ledgers are skipped."""
        summary = ResetSummary(label=label)
        employee_ids = [
            row.employee_id
            for row in self.session.query(EmployeePoints.employee_id)
            .filter(EmployeePoints.total_points > 0)
            .order_by(EmployeePoints.employee_id)
            .all()
        ]
        for employee_id in employee_ids:
            try:
                previous = self.reset_employee(employee_id, label)
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                log.error("fiscal reset failed employee=%s: %s", employee_id, e)
                summary.errors.append({"employee_id": employee_id, "error": str(e)})
                continue
            if previous is None:
                continue
            summary.employees_processed += 1
            summary.points_removed += previous
            summary.results.append({
                "employee_id": employee_id,
                "previous_points": previous,
                "reset_at": self.now().isoformat(),
            })
        log.info("fiscal reset %s: employees=%s points=%s errors=%s",
                 label, summary.employees_processed, summary.points_removed, len(summary.errors))
        return summary

    def reconcile_employee(self, employee_id: int, contraventions: Iterable[Contravention]) -> Optional[dict]:
        """Overwrite one ledger from its authoritative contraventions.

        The sticky LEVEL_3 flag is re-derived from the same contraventions.
        Returns ``None`` when the stored total, flag and level already match,
        so a second pass over unchanged data writes nothing. Otherwise a ``reset``
        entry followed by one ``add`` entry per contravention is appended,
        keeping the history append-only and its sum equal to the total.
        """
        contraventions = list(contraventions)
        expected = sum(c.points for c in contraventions)
        ledger = self.get(employee_id)
        current_total = ledger.total_points if ledger else 0
        current_level = ledger.current_level if ledger else None
        current_impact = bool(ledger and ledger.performance_impact)
        impact = self.derive_impact(employee_id, [(c.points, c.created_at) for c in contraventions])
        new_level = _value(self.policy.resolve(expected, impact))
        if expected == current_total and new_level == current_level and impact == current_impact:
            return None

        ledger = self._locked(employee_id)
        now = self.now()
        self._append(ledger, LedgerEntry.reset(
            ledger.total_points, "Reconciled from contraventions", occurred_at=now,
        ))
        for c in contraventions:
            self._append(ledger, LedgerEntry.add(
                c.points, f"Synced from {c.reference_no}", c.id, c.reference_no, occurred_at=now,
            ))
        ledger.total_points = expected
        ledger.performance_impact = impact
        ledger.current_level = new_level
        self.session.flush()
        log.info("ledger reconciled employee=%s points %s->%s level %s->%s",
                 employee_id, current_total, expected, current_level, new_level)
        return {
            "employee_id": employee_id,
            "contravention_count": len(contraventions),
            "previous_points": current_total,
            "new_points": expected,
            "previous_level": current_level,
            "new_level": new_level,
        }

    def set_level(self, employee_id: int, level) -> bool:
        """Re-derive and store the level only; used by escalation repair."""
        ledger = self._locked(employee_id)
        level = _value(level)
        if ledger.current_level == level:
            return False
        ledger.current_level = level
        ledger.last_calculated = self.now()
        self.session.flush()
        return True

    # --- reporting ---
    def history(self, employee_id: int) -> List[PointsHistory]:
        return (
            self.session.query(PointsHistory)
            .filter(PointsHistory.employee_id == employee_id)
            .order_by(PointsHistory.id)
            .all()
        )

    def summary(self, employee_id: int) -> dict:
        employee = self.session.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        ledger = self.get(employee_id)
        total = ledger.total_points if ledger else 0
        level = ledger.current_level if ledger else None
        next_threshold = self.policy.next_threshold(total, level)
        pending = (
            self.session.query(TrainingRecord)
            .filter(
                TrainingRecord.employee_id == employee_id,
                TrainingRecord.status.in_([
                    TrainingStatus.ASSIGNED, TrainingStatus.IN_PROGRESS, TrainingStatus.OVERDUE,
                ]),
            )
            .all()
        )
        return {
            "employee_id": employee.id,
            "employee_name": employee.name,
            "total_points": total,
            "current_level": level,
            "level_name": self.policy.name(level),
            "performance_impact": bool(ledger and ledger.performance_impact),
            "next_level_threshold": next_threshold,
            "points_to_next_level": (next_threshold - total) if next_threshold is not None else None,
            "contravention_count": (
                self.session.query(Contravention).filter(Contravention.employee_id == employee_id).count()
            ),
            "points_history": [
                {
                    "date": h.occurred_at.isoformat(),
                    "points": h.delta,
                    "type": h.kind.value if hasattr(h.kind, "value") else h.kind,
                    "reason": h.reason,
                    "reference_no": h.contravention_ref,
                }
                for h in self.history(employee_id)
            ],
            "pending_training": [
                {
                    "id": t.id,
                    "course_name": t.course.name if t.course else None,
                    "due_date": t.due_date.isoformat(),
                    "status": t.status.value,
                }
                for t in pending
            ],
        }
