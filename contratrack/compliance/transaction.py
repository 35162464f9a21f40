"""Commit/rollback boundary shared by the top-level operations."""
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

from .errors import ConflictError


@contextmanager
def operation(session, notifications, conflict_message="The record was changed concurrently, please retry"):
    """Run one logical operation as a single transaction.

    On success the transaction commits and only then queued notifications
    are delivered. Any exception rolls back everything written inside the
    block and drops the queued notifications. Unique-constraint violations
    surface as :class:`ConflictError`.
    """
    try:
        yield
        session.commit()
    except IntegrityError as e:
        session.rollback()
        notifications.discard()
        raise ConflictError(conflict_message) from e
    except Exception:
        session.rollback()
        notifications.discard()
        raise
    notifications.flush(session)
