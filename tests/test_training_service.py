from datetime import timedelta

import pytest

from contratrack.compliance.errors import ConflictError, NotFoundError, StateConflictError
from contratrack.compliance.history import EntryKind
from contratrack.compliance.models import TrainingRecord, TrainingStatus
from contratrack.compliance.notifications import TRAINING_ASSIGNED, TRAINING_OVERDUE


def test_trigger_without_mandatory_course_is_noop(services, seed, session):
    emp = seed.employee()
    seed.course(name="Optional", mandatory=False)
    assert services.training.trigger(emp.id) is None
    assert session.query(TrainingRecord).count() == 0


def test_trigger_assigns_once(services, seed, session, clock):
    emp = seed.employee()
    course = seed.course()
    record = services.training.trigger(emp.id)
    session.commit()
    assert record.status == TrainingStatus.ASSIGNED
    assert record.course_id == course.id
    assert record.due_date == clock() + timedelta(days=30)
    assert not record.points_credited
    assert [p[1] for p in services.notifications.pending] == [TRAINING_ASSIGNED]

    assert services.training.trigger(emp.id) is None
    assert session.query(TrainingRecord).count() == 1


def test_trigger_skips_existing_record_in_any_status(services, seed, session):
    emp = seed.employee()
    seed.course()
    record = services.training.trigger(emp.id)
    session.commit()
    services.training.waive(record.id)
    assert services.training.trigger(emp.id) is None


def test_complete_credits_ledger_once(services, seed, session):
    emp = seed.employee()
    seed.course()
    services.ledger.add_points(emp.id, 3, "three")
    record = services.training.trigger(emp.id)
    session.commit()

    services.training.complete(record.id)
    ledger = services.ledger.get(emp.id)
    assert ledger.total_points == 2
    assert ledger.current_level == "LEVEL_1"
    assert record.status == TrainingStatus.COMPLETED
    assert record.points_credited
    assert record.completed_at is not None

    with pytest.raises(StateConflictError):
        services.training.complete(record.id)
    assert services.ledger.get(emp.id).total_points == 2
    credits = [h for h in services.ledger.history(emp.id) if h.kind == EntryKind.CREDIT]
    assert len(credits) == 1


def test_complete_from_in_progress_and_overdue(services, seed, session, clock):
    a = seed.employee()
    b = seed.employee()
    seed.course()
    ra = services.training.trigger(a.id)
    rb = services.training.trigger(b.id)
    session.commit()

    services.training.start(ra.id)
    assert ra.status == TrainingStatus.IN_PROGRESS
    with pytest.raises(StateConflictError):
        services.training.start(ra.id)
    services.training.complete(ra.id)
    assert ra.status == TrainingStatus.COMPLETED

    clock.advance(days=31)
    services.training.mark_overdue()
    assert rb.status == TrainingStatus.OVERDUE
    services.training.complete(rb.id)
    assert rb.status == TrainingStatus.COMPLETED


def test_waived_training_cannot_be_completed(services, seed, session):
    emp = seed.employee()
    seed.course()
    record = services.training.trigger(emp.id)
    session.commit()
    services.training.waive(record.id)
    with pytest.raises(StateConflictError):
        services.training.complete(record.id)
    with pytest.raises(StateConflictError):
        services.training.waive(record.id)


def test_unknown_training_record(services):
    with pytest.raises(NotFoundError):
        services.training.complete(404)


def test_assign_conflicts_while_open(services, seed, session):
    emp = seed.employee()
    course = seed.course()
    services.training.assign(emp.id, course.id)
    with pytest.raises(ConflictError) as exc:
        services.training.assign(emp.id, course.id)
    assert str(exc.value) == "Training already assigned to this employee"


def test_assign_reopens_finished_record_and_resets_credit(services, seed, session, clock):
    emp = seed.employee()
    course = seed.course()
    services.ledger.add_points(emp.id, 2, "two")
    session.commit()
    record = services.training.assign(emp.id, course.id)
    services.training.complete(record.id)
    assert services.ledger.get(emp.id).total_points == 1

    again = services.training.assign(emp.id, course.id, due_date=clock() + timedelta(days=7))
    assert again.id == record.id
    assert again.status == TrainingStatus.ASSIGNED
    assert not again.points_credited
    assert again.completed_at is None
    services.training.complete(again.id)
    assert services.ledger.get(emp.id).total_points == 0


def test_assign_unknown_employee_or_course(services, seed):
    emp = seed.employee()
    course = seed.course()
    with pytest.raises(NotFoundError):
        services.training.assign(999, course.id)
    with pytest.raises(NotFoundError):
        services.training.assign(emp.id, 999)


def test_mark_overdue_notifies_after_commit(services, seed, session, clock, notifier):
    emp = seed.employee()
    seed.course()
    record = services.training.trigger(emp.id)
    session.commit()
    services.notifications.discard()

    assert services.training.mark_overdue() == []
    clock.advance(days=31)
    overdue = services.training.mark_overdue()
    assert [r.id for r in overdue] == [record.id]
    assert session.get(TrainingRecord, record.id).status == TrainingStatus.OVERDUE
    assert [e[1] for e in notifier.events()] == [TRAINING_OVERDUE]
    assert services.training.mark_overdue() == []
