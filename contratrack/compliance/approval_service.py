"""Contravention lifecycle and its approval requests.

Status flow::

    create ──(approver)──────► PENDING_APPROVAL ──approve──► PENDING_REVIEW
       │                            │    ▲                       │
       ├──(document)──► PENDING_REVIEW   reject  resubmit        mark_complete
       │                            ▼    │                       ▼
       └──(neither)──► PENDING_UPLOAD   REJECTED              COMPLETED
                            │
                            └──upload_approval──► PENDING_REVIEW

``delete`` is allowed from any status; ``void`` moves any non-voided
contravention to VOIDED. Both take the contravention's points back off the
employee's ledger.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from contratrack.permissions import Role, can
from .errors import AuthorizationError, ConflictError, NotFoundError, StateConflictError, ValidationError
from .escalation_service import EscalationRecorder
from .models import (
    ApprovalRequest, ApprovalStatus, Contravention, ContraventionStatus, ContraventionType, Employee,
)
from .notifications import (
    APPROVAL_REQUESTED, CONTRAVENTION_COMPLETED, CONTRAVENTION_LOGGED, CONTRAVENTION_REJECTED,
    NotificationDispatcher,
)
from .points_ledger import PointsLedger, PointsResult
from .reference_numbers import ReferenceNumberGenerator
from .training_service import TrainingTrigger
from .transaction import operation

log = logging.getLogger(__name__)

# descriptive fields a submitter may revise
EDITABLE_FIELDS = ("vendor", "value_sgd", "description", "justification", "mitigation", "summary")
USER_EDITABLE_STATUSES = (ContraventionStatus.PENDING_APPROVAL, ContraventionStatus.REJECTED)


class ApprovalWorkflow:
    """Owns every status change of a contravention.

    All collaborators must share one :class:`NotificationDispatcher` so that
    events queued by the ledger side effects are delivered with the
    operation's own events after commit.
    """

    def __init__(
        self,
        session: Session,
        ledger: PointsLedger,
        recorder: EscalationRecorder,
        training: TrainingTrigger,
        refgen: Optional[ReferenceNumberGenerator] = None,
        notifications: Optional[NotificationDispatcher] = None,
        training_threshold: int = 3,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session = session
        self.ledger = ledger
        self.recorder = recorder
        self.training = training
        self.refgen = refgen or ReferenceNumberGenerator(session)
        self.notifications = notifications or NotificationDispatcher()
        self.training_threshold = training_threshold
        self.now = now

    # --- lookups ---
    def get(self, contravention_id: int) -> Contravention:
        contravention = self.session.get(Contravention, contravention_id)
        if contravention is None:
            raise NotFoundError("Contravention", contravention_id)
        return contravention

    def _employee(self, employee_id: int) -> Employee:
        employee = self.session.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        return employee

    def _require(self, actor_id: int, action: str) -> Employee:
        actor = self._employee(actor_id)
        if not can(actor.role, action):
            raise AuthorizationError(f"Not allowed to {action.replace('_', ' ')}")
        return actor

    def _approver(self, employee: Optional[Employee], lookup) -> Employee:
        if employee is None:
            raise NotFoundError("Approver", lookup)
        if not can(employee.role, "be_approver"):
            raise ValidationError("The specified user is not an approver")
        return employee

    def _approver_by_email(self, email: str) -> Employee:
        email = email.strip().lower()
        employee = self.session.query(Employee).filter(func.lower(Employee.email) == email).first()
        return self._approver(employee, email)

    def pending_for(self, approver_id: int) -> List[ApprovalRequest]:
        return (
            self.session.query(ApprovalRequest)
            .filter(ApprovalRequest.approver_id == approver_id, ApprovalRequest.status == ApprovalStatus.PENDING)
            .order_by(ApprovalRequest.created_at, ApprovalRequest.id)
            .all()
        )

    # --- helpers ---
    def _add_and_escalate(self, employee_id: int, points: int, reason: str, contravention: Contravention) -> PointsResult:
        result = self.ledger.add_points(
            employee_id, points, reason,
            contravention_id=contravention.id, contravention_ref=contravention.reference_no,
        )
        self.recorder.record_if_needed(employee_id, result.previous_level, result.new_level, result.new_total)
        if result.new_total >= self.training_threshold:
            self.training.trigger(employee_id)
        return result

    def _queue_approval(self, approval: ApprovalRequest, contravention: Contravention) -> None:
        self.notifications.queue(
            approval.approver_id, APPROVAL_REQUESTED,
            approval_id=approval.id,
            reference_no=contravention.reference_no,
            employee=contravention.employee.name if contravention.employee else None,
            type=contravention.type.name if contravention.type else None,
            severity=contravention.severity.value,
        )

    @staticmethod
    def _apply_fields(contravention: Contravention, fields: dict) -> None:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        for name, value in fields.items():
            setattr(contravention, name, value)

    def _check_status(self, contravention: Contravention, allowed, action: str) -> None:
        if contravention.status not in allowed:
            raise StateConflictError(
                "Contravention", contravention.status.value, [s.value for s in allowed], action,
            )

    # --- creation ---
    def create(
        self,
        employee_id: int,
        type_id: int,
        logged_by_id: int,
        incident_date: date,
        description: str = "",
        approver_email: Optional[str] = None,
        approval_doc_url: Optional[str] = None,
        **fields,
    ) -> Contravention:
        """Log a contravention, add its points and open its approval request.

        The contravention, its ledger entry, any escalation or training it
        triggers and its approval request commit together or not at all.
        """
        with operation(self.session, self.notifications):
            ctype = self.session.get(ContraventionType, type_id)
            if ctype is None:
                raise NotFoundError("ContraventionType", type_id)
            if not ctype.is_active:
                raise ValidationError("Invalid contravention type")
            employee = self._employee(employee_id)
            self._employee(logged_by_id)
            approver = self._approver_by_email(approver_email) if approver_email else None

            if approver is not None:
                status = ContraventionStatus.PENDING_APPROVAL
            elif approval_doc_url:
                status = ContraventionStatus.PENDING_REVIEW
            else:
                status = ContraventionStatus.PENDING_UPLOAD

            contravention = Contravention(
                reference_no=self.refgen.next(self.now().year),
                employee_id=employee.id,
                logged_by_id=logged_by_id,
                type_id=ctype.id,
                severity=ctype.default_severity,
                points=ctype.default_points,
                incident_date=incident_date,
                authorizer_email=approver.email if approver else None,
                approval_doc_url=approval_doc_url,
                status=status,
                description=description,
                created_at=self.now(),
            )
            self._apply_fields(contravention, fields)
            self.session.add(contravention)
            self.session.flush()

            self._add_and_escalate(
                employee.id, contravention.points, f"{contravention.reference_no}: {ctype.name}", contravention,
            )
            if approver is not None:
                approval = ApprovalRequest(
                    contravention_id=contravention.id,
                    approver_id=approver.id,
                    status=ApprovalStatus.PENDING,
                    created_at=self.now(),
                )
                self.session.add(approval)
                self.session.flush()
                self._queue_approval(approval, contravention)
            self.notifications.queue(
                employee.id, CONTRAVENTION_LOGGED,
                reference_no=contravention.reference_no,
                type=ctype.name,
                severity=contravention.severity.value,
                points=contravention.points,
            )
        log.info("contravention %s logged employee=%s points=%s status=%s",
                 contravention.reference_no, employee_id, contravention.points, status.value)
        return contravention

    def request_approval(self, contravention_id: int, approver_id: int) -> ApprovalRequest:
        """Designate an additional approver for a contravention."""
        with operation(self.session, self.notifications, "Approval request already exists for this approver"):
            contravention = self.get(contravention_id)
            approver = self._approver(self.session.get(Employee, approver_id), approver_id)
            existing = (
                self.session.query(ApprovalRequest)
                .filter(ApprovalRequest.contravention_id == contravention.id,
                        ApprovalRequest.approver_id == approver.id)
                .first()
            )
            if existing is not None:
                raise ConflictError("Approval request already exists for this approver")
            approval = ApprovalRequest(
                contravention_id=contravention.id,
                approver_id=approver.id,
                status=ApprovalStatus.PENDING,
                created_at=self.now(),
            )
            self.session.add(approval)
            self.session.flush()
            self._queue_approval(approval, contravention)
        log.info("approval requested %s approver=%s", contravention.reference_no, approver_id)
        return approval

    # --- transitions ---
    def upload_approval(self, contravention_id: int, document_url: str, actor_id: int) -> Contravention:
        """Attach external approval evidence.

        Moves PENDING_UPLOAD to PENDING_REVIEW. Administrators may also
        replace the document of a COMPLETED contravention; its status stays.
        """
        if not document_url or not document_url.strip():
            raise ValidationError("An approval document URL is required")
        with operation(self.session, self.notifications):
            contravention = self.get(contravention_id)
            actor = self._employee(actor_id)
            if contravention.status == ContraventionStatus.PENDING_UPLOAD:
                contravention.status = ContraventionStatus.PENDING_REVIEW
            elif contravention.status == ContraventionStatus.COMPLETED and can(actor.role, "replace_document"):
                log.info("approval document replaced on completed %s by %s", contravention.reference_no, actor_id)
            else:
                self._check_status(contravention, (ContraventionStatus.PENDING_UPLOAD,), "upload approval")
            contravention.approval_doc_url = document_url.strip()
        log.info("approval uploaded %s status=%s", contravention.reference_no, contravention.status.value)
        return contravention

    def review(self, approval_id: int, reviewer_id: int, decision, notes: Optional[str] = None) -> ApprovalRequest:
        """Record an approver's decision.

        APPROVED moves the contravention to PENDING_REVIEW, REJECTED to
        REJECTED. Points are not touched either way. The first decision
        wins; requests still pending with other approvers are superseded.
        """
        try:
            decision = ApprovalStatus(decision)
        except ValueError:
            raise ValidationError(f"Unknown review decision: {decision}") from None
        if decision not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            raise ValidationError("A review decision must be APPROVED or REJECTED")

        with operation(self.session, self.notifications):
            approval = self.session.get(ApprovalRequest, approval_id)
            if approval is None:
                raise NotFoundError("ApprovalRequest", approval_id)
            reviewer = self._employee(reviewer_id)
            if approval.status != ApprovalStatus.PENDING:
                raise StateConflictError("ApprovalRequest", approval.status.value, ["PENDING"], "review")
            if reviewer.id != approval.approver_id and reviewer.role != Role.ADMIN:
                raise AuthorizationError("Not authorized to review this approval")
            contravention = approval.contravention
            self._check_status(contravention, (ContraventionStatus.PENDING_APPROVAL,), "review")

            approval.status = decision
            approval.reviewed_by_id = reviewer.id
            approval.reviewed_at = self.now()
            approval.review_notes = notes
            superseded = self._supersede_others(approval, f"Superseded: {decision.value} by {reviewer.name}")
            if decision == ApprovalStatus.APPROVED:
                contravention.status = ContraventionStatus.PENDING_REVIEW
            else:
                contravention.status = ContraventionStatus.REJECTED
                self.notifications.queue(
                    contravention.logged_by_id, CONTRAVENTION_REJECTED,
                    reference_no=contravention.reference_no,
                    reviewer=reviewer.name,
                    notes=notes,
                )
        log.info("approval %s %s by %s; %s is now %s (superseded %s)", approval.id, decision.value, reviewer_id,
                 contravention.reference_no, contravention.status.value, superseded)
        return approval

    def _supersede_others(self, approval: ApprovalRequest, note: str) -> int:
        others = (
            self.session.query(ApprovalRequest)
            .filter(
                ApprovalRequest.contravention_id == approval.contravention_id,
                ApprovalRequest.id != approval.id,
                ApprovalRequest.status == ApprovalStatus.PENDING,
            )
            .all()
        )
        for other in others:
            other.status = ApprovalStatus.SUPERSEDED
            other.reviewed_at = self.now()
            other.review_notes = note
        return len(others)

    def resubmit(
        self,
        contravention_id: int,
        user_id: int,
        approver_email: Optional[str] = None,
        **fields,
    ) -> Contravention:
        """Send a rejected contravention back for approval.

        Only the original submitter may resubmit. The approval request for
        the (possibly new) approver is created or reset to PENDING.
        """
        with operation(self.session, self.notifications):
            contravention = self.get(contravention_id)
            if contravention.logged_by_id != user_id:
                raise AuthorizationError("You can only resubmit contraventions you created")
            self._check_status(contravention, (ContraventionStatus.REJECTED,), "resubmit")
            email = approver_email or contravention.authorizer_email
            if not email:
                raise ValidationError("An approver email is required to resubmit")
            approver = self._approver_by_email(email)

            self._apply_fields(contravention, fields)
            contravention.authorizer_email = approver.email
            contravention.status = ContraventionStatus.PENDING_APPROVAL

            approval = (
                self.session.query(ApprovalRequest)
                .filter(ApprovalRequest.contravention_id == contravention.id,
                        ApprovalRequest.approver_id == approver.id)
                .first()
            )
            if approval is None:
                approval = ApprovalRequest(contravention_id=contravention.id, approver_id=approver.id)
                self.session.add(approval)
            approval.status = ApprovalStatus.PENDING
            approval.reviewed_by_id = None
            approval.reviewed_at = None
            approval.review_notes = None
            approval.created_at = self.now()
            self.session.flush()
            self._queue_approval(approval, contravention)
        log.info("contravention %s resubmitted to approver=%s", contravention.reference_no, approver.id)
        return contravention

    def user_update(self, contravention_id: int, user_id: int, **fields) -> Contravention:
        """Let the submitter revise descriptive fields before approval."""
        with operation(self.session, self.notifications):
            contravention = self.get(contravention_id)
            if contravention.logged_by_id != user_id:
                raise AuthorizationError("You can only edit contraventions you created")
            self._check_status(contravention, USER_EDITABLE_STATUSES, "edit")
            self._apply_fields(contravention, fields)
        return contravention

    def mark_complete(self, contravention_id: int, admin_id: int, notes: Optional[str] = None) -> Contravention:
        with operation(self.session, self.notifications):
            admin = self._require(admin_id, "mark_complete")
            contravention = self.get(contravention_id)
            self._check_status(contravention, (ContraventionStatus.PENDING_REVIEW,), "mark complete")
            contravention.status = ContraventionStatus.COMPLETED
            contravention.resolved_at = self.now()
            contravention.completed_by_id = admin.id
            if notes:
                contravention.summary = f"{contravention.summary or ''}\n\nAdmin notes: {notes}"
            self.notifications.queue(
                contravention.employee_id, CONTRAVENTION_COMPLETED,
                reference_no=contravention.reference_no,
            )
        log.info("contravention %s completed by %s", contravention.reference_no, admin_id)
        return contravention

    # --- administrative overrides ---
    def delete(self, contravention_id: int, actor_id: int) -> None:
        """Remove a contravention and its approval requests, reversing its points."""
        with operation(self.session, self.notifications):
            self._require(actor_id, "delete_contravention")
            contravention = self.get(contravention_id)
            ref = contravention.reference_no
            # voiding already took the points back
            if contravention.status != ContraventionStatus.VOIDED:
                self.ledger.reverse_points(
                    contravention.employee_id, contravention.points, f"Deleted {ref}",
                    contravention_id=contravention.id, contravention_ref=ref,
                )
            self.session.delete(contravention)
            self.session.flush()
        log.info("contravention %s deleted by %s", ref, actor_id)

    def void(self, contravention_id: int, actor_id: int, reason: str) -> Contravention:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to void a contravention")
        with operation(self.session, self.notifications):
            self._require(actor_id, "void_contravention")
            contravention = self.get(contravention_id)
            if contravention.status == ContraventionStatus.VOIDED:
                raise StateConflictError(
                    "Contravention", contravention.status.value,
                    [s.value for s in ContraventionStatus if s != ContraventionStatus.VOIDED], "void",
                )
            self.ledger.reverse_points(
                contravention.employee_id, contravention.points, f"Voided {contravention.reference_no}: {reason}",
                contravention_id=contravention.id, contravention_ref=contravention.reference_no,
            )
            contravention.status = ContraventionStatus.VOIDED
            contravention.resolved_at = self.now()
            contravention.summary = f"{contravention.summary or ''}\n\nVoided: {reason}".lstrip()
        log.info("contravention %s voided by %s", contravention.reference_no, actor_id)
        return contravention

    def reassign(self, contravention_id: int, new_employee_id: int, actor_id: int) -> Contravention:
        """Move a contravention to another employee together with its points."""
        with operation(self.session, self.notifications):
            self._require(actor_id, "reassign_contravention")
            contravention = self.get(contravention_id)
            new_employee = self._employee(new_employee_id)
            old_employee_id = contravention.employee_id
            if old_employee_id == new_employee.id:
                raise ValidationError("Contravention already belongs to this employee")
            if contravention.status == ContraventionStatus.VOIDED:
                raise StateConflictError(
                    "Contravention", contravention.status.value,
                    [s.value for s in ContraventionStatus if s != ContraventionStatus.VOIDED], "reassign",
                )
            ref = contravention.reference_no
            self.ledger.reverse_points(
                old_employee_id, contravention.points, f"Reassigned {ref} to employee {new_employee.id}",
                contravention_id=contravention.id, contravention_ref=ref,
            )
            contravention.employee_id = new_employee.id
            self.session.flush()
            self._add_and_escalate(new_employee.id, contravention.points, f"Reassigned: {ref}", contravention)
        log.info("contravention %s reassigned %s -> %s by %s", ref, old_employee_id, new_employee_id, actor_id)
        return contravention
