"""Escalation records created when a ledger crosses a level boundary."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .errors import NotFoundError, StateConflictError, ValidationError
from .escalation_policy import EscalationPolicy
from .models import Escalation
from .notifications import ESCALATION_TRIGGERED, NotificationDispatcher
from .transaction import operation

log = logging.getLogger(__name__)


class EscalationRecorder:
    def __init__(
        self,
        session: Session,
        policy: EscalationPolicy,
        notifications: Optional[NotificationDispatcher] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.policy = policy
        self.notifications = notifications or NotificationDispatcher()
        self.now = now

    def open_escalation(self, employee_id: int, level) -> Optional[Escalation]:
        return (
            self.session.query(Escalation)
            .filter(
                Escalation.employee_id == employee_id,
                Escalation.level == str(getattr(level, "value", level)),
                Escalation.completed_at.is_(None),
            )
            .first()
        )

    def active_for(self, employee_id: int) -> List[Escalation]:
        return (
            self.session.query(Escalation)
            .filter(Escalation.employee_id == employee_id, Escalation.completed_at.is_(None))
            .order_by(Escalation.triggered_at.desc())
            .all()
        )

    def record_if_needed(self, employee_id: int, previous_level, new_level, trigger_points: int) -> Optional[Escalation]:
        """Create an escalation when the level moved to a new, non-empty level."""
        if new_level is None or new_level == previous_level:
            return None
        if self.open_escalation(employee_id, new_level) is not None:
            log.info("escalation %s already open for employee=%s", new_level, employee_id)
            return None
        return self.create(employee_id, new_level, trigger_points)

    def create(self, employee_id: int, level, trigger_points: int) -> Escalation:
        """Insert an escalation unconditionally. Callers check for open ones."""
        now = self.now()
        spec = self.policy.spec(level)
        escalation = Escalation(
            employee_id=employee_id,
            level=spec.level.value,
            trigger_points=trigger_points,
            actions_required=self.policy.actions(level),
            actions_completed=[],
            due_date=self.policy.due_date(level, now),
            triggered_at=now,
        )
        self.session.add(escalation)
        self.session.flush()
        log.info("escalation %s created employee=%s points=%s", spec.level.value, employee_id, trigger_points)
        self.notifications.queue(
            employee_id, ESCALATION_TRIGGERED,
            level=spec.level.value,
            level_name=spec.name,
            trigger_points=trigger_points,
            actions=", ".join(escalation.actions_required),
            due_date=escalation.due_date.date().isoformat(),
        )
        return escalation

    def archive(self, escalation: Escalation, note: str) -> None:
        escalation.completed_at = self.now()
        escalation.notes = f"{escalation.notes} {note}" if escalation.notes else note
        log.info("escalation %s archived employee=%s: %s", escalation.id, escalation.employee_id, note)

    def complete_action(self, escalation_id: int, action: str) -> Escalation:
        with operation(self.session, self.notifications):
            escalation = self.session.get(Escalation, escalation_id)
            if escalation is None:
                raise NotFoundError("Escalation", escalation_id)
            if escalation.completed_at is not None:
                raise StateConflictError("Escalation", "COMPLETED", ["ACTIVE"], "complete an action")
            required = list(escalation.actions_required or [])
            if action not in required:
                raise ValidationError(f"'{action}' is not a required action of this escalation")
            done = list(escalation.actions_completed or [])
            if action not in done:
                done.append(action)
            # new list object so the JSON column is marked dirty
            escalation.actions_completed = done
            if all(a in done for a in required):
                escalation.completed_at = self.now()
        return escalation
