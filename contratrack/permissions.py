"""Role-based permission guard for ContraTrack.

Ownership rules (only the submitter may resubmit, only the assigned approver
may review) depend on the record being acted on and are enforced by the
workflow itself; this module answers the role-only part of the question.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """User roles used for permission checks."""

    ADMIN = "ADMIN"
    APPROVER = "APPROVER"
    USER = "USER"


# actions reserved for administrators
ADMIN_ACTIONS = frozenset({
    "mark_complete",
    "replace_document",
    "delete_contravention",
    "void_contravention",
    "reassign_contravention",
    "manage_training",
    "run_maintenance",
    "health",
})

# actions that approvers share with admins
APPROVER_ACTIONS = frozenset({
    "review_approval",
    "be_approver",
})


def can(role: Role, action: str) -> bool:
    """Return ``True`` if a user with ``role`` can perform ``action``.

    ``admin`` bypasses all checks. Anything not listed as admin-only or
    approver-only is open to every authenticated role, e.g.
    ``"log_contravention"`` or ``"upload_approval"``.
    """

    if role == Role.ADMIN:
        return True

    if action in ADMIN_ACTIONS:
        return False

    if action in APPROVER_ACTIONS:
        return role == Role.APPROVER

    return True
