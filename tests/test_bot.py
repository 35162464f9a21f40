from datetime import date

import pytest

from contratrack import bot
from contratrack.callbacks import mk_cb
from contratrack.permissions import Role
from contratrack.compliance.models import ApprovalStatus, ContraventionStatus


@pytest.fixture
def pending(services, seed):
    approver = seed.employee(name="App Rover", role=Role.APPROVER, chat_id=7001)
    emp = seed.employee()
    c = services.workflow.create(
        emp.id, seed.ctype(points=2).id, emp.id, date(2025, 6, 1), approver_email=approver.email,
    )
    return c, c.approval_requests[0]


def test_approve_button(session, pending, notifier):
    c, approval = pending
    text = bot.handle_approval_callback(session, mk_cb("apr", id=approval.id, d="A"), 7001, notifier)
    assert text == "Approved"
    session.refresh(c)
    assert c.status == ContraventionStatus.PENDING_REVIEW


def test_button_errors(session, pending, notifier):
    c, approval = pending
    assert bot.handle_approval_callback(session, "junk", 7001) == "Invalid or expired button"
    assert (bot.handle_approval_callback(session, mk_cb("apr", id=approval.id, d="R"), 12345)
            == "Your Telegram account is not linked to an employee")
    assert bot.handle_approval_callback(session, mk_cb("apr", id=approval.id, d="R"), 7001, notifier) == "Rejected"
    again = bot.handle_approval_callback(session, mk_cb("apr", id=approval.id, d="A"), 7001, notifier)
    assert "status is REJECTED" in again
    session.refresh(approval)
    assert approval.status == ApprovalStatus.REJECTED


def test_admin_jobs(session, pending, notifier):
    today = date(2025, 6, 2)
    assert bot.run_admin_job(session, "health", notifier, today).startswith("OK\n")
    assert "Pending approvals: 1" in bot.run_admin_job(session, "health", notifier, today)
    status = bot.run_admin_job(session, "fy_status", notifier, today)
    assert status.startswith("Fiscal year FY2025/26 (2025-04-01 - 2026-03-31)")
    assert "Reset done: no" in status

    assert bot.run_admin_job(session, "fy_reset", notifier, today) == "Fiscal reset FY2025/26: 1 employees, 2 points removed"
    assert bot.run_admin_job(session, "fy_reset", notifier, today) == "Fiscal reset FY2025/26 already done"
    # contraventions from before the reset are not counted again
    assert bot.run_admin_job(session, "reconcile", notifier, date(2025, 6, 2)).startswith("Reconciled 2 employees, fixed 0")
    assert bot.run_admin_job(session, "overdue", notifier, today) == "Training records marked overdue: 0"
    assert bot.run_admin_job(session, "recalc_escalations", notifier, today).startswith("Levels updated: 0")
    with pytest.raises(ValueError):
        bot.run_admin_job(session, "reboot", notifier, today)


def test_is_admin(session, seed, monkeypatch):
    monkeypatch.setattr(bot.config, "ADMIN_IDS", {42})
    seed.employee(role=Role.ADMIN, chat_id=9)
    seed.employee(role=Role.APPROVER, chat_id=10)
    assert bot.is_admin(session, 42)
    assert bot.is_admin(session, 9)
    assert not bot.is_admin(session, 10)
    assert not bot.is_admin(session, 11)
