"""Typed errors raised by the compliance core.

Callers catch by type and read ``code`` for a machine-readable identifier.
Messages are safe to show to end users; storage errors are never passed
through verbatim.

    ComplianceError
    +-- ValidationError
    +-- NotFoundError
    +-- ConflictError
    |   +-- StateConflictError
    +-- AuthorizationError
"""

from __future__ import annotations

from typing import Iterable, Optional


class ComplianceError(Exception):
    """Base class for every error raised by the compliance core."""

    code: str = "COMPLIANCE_ERROR"


class ValidationError(ComplianceError):
    """Input reached the core in a shape it cannot accept."""

    code: str = "VALIDATION_ERROR"


class NotFoundError(ComplianceError):
    """A referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ConflictError(ComplianceError):
    """The operation clashes with existing data (duplicates, double credit)."""

    code: str = "CONFLICT"


class StateConflictError(ConflictError):
    """A transition was requested from a state that does not permit it."""

    code: str = "STATE_CONFLICT"

    def __init__(self, entity: str, current: str, expected: Iterable[str], action: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.expected = tuple(expected)
        self.action = action
        what = f" cannot {action}" if action else ""
        super().__init__(
            f"{entity}{what}: status is {current}, expected one of {', '.join(self.expected)}"
        )


class AuthorizationError(ComplianceError):
    """The actor is not allowed to perform the operation."""

    code: str = "FORBIDDEN"
