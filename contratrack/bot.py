"""
ContraTrack bot (polling)
- Telegram: pyTelegramBotAPI (TeleBot) for notifications, approver buttons
  and admin commands
- DB: SQLAlchemy (DATABASE_URL)
- Daily 02:00 local time: overdue training, fiscal-year reset on the fiscal
  start day, legacy decay when enabled
Admin commands: /health /fy_status /fy_reset /reconcile /recalc_escalations /overdue
Env: see contratrack.config
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

import pytz
import schedule
from telebot import TeleBot, apihelper

from contratrack import config
from contratrack.callbacks import parse_approval_callback
from contratrack.db import init_db, make_engine, make_session_factory
from contratrack.permissions import can
from contratrack.compliance.approval_service import ApprovalWorkflow
from contratrack.compliance.errors import ComplianceError
from contratrack.compliance.escalation_policy import EscalationPolicy
from contratrack.compliance.escalation_service import EscalationRecorder
from contratrack.compliance.fiscal_year import is_fiscal_year_start
from contratrack.compliance.maintenance_service import MaintenanceService
from contratrack.compliance.models import ApprovalRequest, ApprovalStatus, Employee, EmployeePoints
from contratrack.compliance.notifications import LogNotifier, NotificationDispatcher, TelegramNotifier
from contratrack.compliance.points_ledger import PointsLedger
from contratrack.compliance.reference_numbers import ReferenceNumberGenerator
from contratrack.compliance.training_service import TrainingTrigger

log = logging.getLogger("contratrack")

LOCAL_TZ = pytz.timezone(config.TZ_NAME)
LAST_TICK: Optional[datetime] = None

ADMIN_COMMANDS = ["health", "fy_status", "fy_reset", "reconcile", "recalc_escalations", "overdue"]


def now_local():
    return datetime.now(LOCAL_TZ)


def today_local() -> date:
    return now_local().date()


# --------- Services ---------
@dataclass
class Services:
    notifications: NotificationDispatcher
    ledger: PointsLedger
    recorder: EscalationRecorder
    training: TrainingTrigger
    workflow: ApprovalWorkflow
    maintenance: MaintenanceService


def build_services(session, notifier=None, now: Callable[[], datetime] = datetime.utcnow) -> Services:
    """Wire every component around one session and one dispatcher."""
    notifications = NotificationDispatcher(notifier)
    policy = EscalationPolicy(config.ESCALATION_MATRIX, config.PERFORMANCE_IMPACT_SINGLE_OFFENSE)
    ledger = PointsLedger(session, policy, training_credit=config.TRAINING_CREDIT, now=now)
    recorder = EscalationRecorder(session, policy, notifications, now=now)
    training = TrainingTrigger(session, ledger, notifications, due_days=config.TRAINING_DUE_DAYS, now=now)
    workflow = ApprovalWorkflow(
        session, ledger, recorder, training,
        refgen=ReferenceNumberGenerator(session),
        notifications=notifications,
        training_threshold=config.TRAINING_TRIGGER_THRESHOLD,
        now=now,
    )
    maintenance = MaintenanceService(
        session, ledger, recorder, training, notifications,
        fiscal_start_month=config.FISCAL_YEAR_START_MONTH,
        training_threshold=config.TRAINING_TRIGGER_THRESHOLD,
        decay_enabled=config.POINTS_DECAY_ENABLED,
        decay_dormant_days=config.DECAY_DORMANT_DAYS,
        decay_points=config.DECAY_POINTS,
        now=now,
    )
    return Services(notifications, ledger, recorder, training, workflow, maintenance)


def employee_for_telegram(session, tg_id: int) -> Optional[Employee]:
    return (
        session.query(Employee)
        .filter(Employee.telegram_chat_id == tg_id, Employee.is_active == True)  # noqa: E712
        .first()
    )


def is_admin(session, tg_id: int) -> bool:
    if tg_id in config.ADMIN_IDS:
        return True
    employee = employee_for_telegram(session, tg_id)
    return employee is not None and can(employee.role, "run_maintenance")


# --------- Admin jobs ---------
def _fmt_errors(errors) -> str:
    if not errors:
        return ""
    lines = [f"Errors: {len(errors)}"]
    lines += [f"  employee {e['employee_id']}: {e['error']}" for e in errors[:10]]
    return "\n" + "\n".join(lines)


def run_admin_job(session, job: str, notifier=None, today: Optional[date] = None) -> str:
    """Run one admin command and return the reply text."""
    today = today or today_local()
    svc = build_services(session, notifier)
    m = svc.maintenance

    if job == "health":
        ledgers = session.query(EmployeePoints).count()
        pending = session.query(ApprovalRequest).filter(ApprovalRequest.status == ApprovalStatus.PENDING).count()
        lt = LAST_TICK.isoformat() if LAST_TICK else "-"
        return f"OK\nLast tick: {lt}\nLedgers: {ledgers}\nPending approvals: {pending}\nTZ: {config.TZ_NAME}"

    if job == "fy_status":
        st = m.fiscal_year_status(today)
        lines = [
            f"Fiscal year {st['current_fiscal_year']} ({st['fiscal_year_start']} - {st['fiscal_year_end']})",
            f"Days until reset: {st['days_until_reset']}",
            f"Reset done: {'yes' if st['reset_done'] else 'no'}",
            f"Employees with points: {len(st['employees_with_points'])}",
        ]
        lines += [
            f"  {e['employee_name']}: {e['total_points']} ({e['level'] or '-'})"
            for e in st["employees_with_points"][:20]
        ]
        return "\n".join(lines)

    if job == "fy_reset":
        summary = m.reset_points_for_new_fiscal_year(today)
        if summary.skipped:
            return f"Fiscal reset {summary.label} already done"
        return (f"Fiscal reset {summary.label}: {summary.employees_processed} employees, "
                f"{summary.points_removed} points removed" + _fmt_errors(summary.errors))

    if job == "reconcile":
        summary = m.reconcile_from_contraventions(since=m.reset_cutoff(today))
        return (f"Reconciled {summary.employees_processed} employees, fixed {summary.employees_fixed}"
                + _fmt_errors(summary.errors))

    if job == "recalc_escalations":
        summary = m.recalculate_all_escalations()
        return (f"Levels updated: {summary.employees_updated}\n"
                f"Escalations archived: {summary.escalations_archived}\n"
                f"Escalations created: {summary.new_escalations_created}" + _fmt_errors(summary.errors))

    if job == "overdue":
        records = svc.training.mark_overdue(today)
        return f"Training records marked overdue: {len(records)}"

    raise ValueError(f"unknown admin job: {job}")


def handle_approval_callback(session, data: str, tg_id: int, notifier=None) -> str:
    """Apply an approve/reject button press and return the toast text."""
    cb = parse_approval_callback(data)
    if not cb.ok:
        log.warning("approval callback rejected from %s: %s", tg_id, cb.error)
        return "Invalid or expired button"
    reviewer = employee_for_telegram(session, tg_id)
    if reviewer is None:
        return "Your Telegram account is not linked to an employee"
    svc = build_services(session, notifier)
    try:
        svc.workflow.review(cb.approval_id, reviewer.id, cb.decision)
    except ComplianceError as e:
        log.info("approval %s by %s failed: %s", cb.approval_id, reviewer.id, e)
        return str(e)
    return "Approved" if cb.decision == ApprovalStatus.APPROVED.value else "Rejected"


# --------- Telegram handlers ---------
def register_handlers(bot: TeleBot, session_factory, notifier) -> None:
    @bot.message_handler(commands=ADMIN_COMMANDS)
    def cmd_admin(m):
        job = m.text.split()[0].lstrip("/").split("@")[0]
        sess = session_factory()
        try:
            if not m.from_user or not is_admin(sess, m.from_user.id):
                return
            try:
                text = run_admin_job(sess, job, notifier)
            except ComplianceError as e:
                text = f"Failed: {e}"
        finally:
            sess.close()
        notifier.send_safe(text, m.chat.id)

    @bot.callback_query_handler(func=lambda c: bool(c.data))
    def cb(c):
        sess = session_factory()
        try:
            text = handle_approval_callback(sess, c.data, c.from_user.id, notifier)
        finally:
            sess.close()
        bot.answer_callback_query(c.id, text, show_alert=text not in ("Approved", "Rejected"))
        if text in ("Approved", "Rejected") and c.message:
            try:
                bot.edit_message_reply_markup(c.message.chat.id, c.message.message_id, reply_markup=None)
            except apihelper.ApiTelegramException as e:
                log.warning("could not clear buttons: %s", e)


# --------- Schedulers ---------
def job_daily(session_factory, notifier) -> None:
    global LAST_TICK
    LAST_TICK = datetime.utcnow()
    today = today_local()
    jobs = [("overdue", lambda m, t: t.mark_overdue(today))]
    if is_fiscal_year_start(today, config.FISCAL_YEAR_START_MONTH):
        jobs.append(("fiscal reset", lambda m, t: m.reset_points_for_new_fiscal_year(today)))
    if config.POINTS_DECAY_ENABLED:
        jobs.append(("decay", lambda m, t: m.run_decay(today)))
    for name, job in jobs:
        sess = session_factory()
        try:
            svc = build_services(sess, notifier)
            job(svc.maintenance, svc.training)
        except Exception:
            log.exception("daily job %s failed", name)
        finally:
            sess.close()


def scheduler_loop(session_factory, notifier):
    schedule.clear()
    schedule.every().day.at("02:00", config.TZ_NAME).do(job_daily, session_factory, notifier)
    while True:
        schedule.run_pending()
        time.sleep(1)


# --------- START (polling) ---------
def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    engine = make_engine(config.DATABASE_URL)
    init_db(engine)
    session_factory = make_session_factory(engine)

    if not config.TELEGRAM_TOKEN:
        log.warning("TELEGRAM_TOKEN not set; notifications go to the log, scheduler only")
        scheduler_loop(session_factory, LogNotifier())
        return

    bot = TeleBot(config.TELEGRAM_TOKEN)
    notifier = TelegramNotifier(bot)
    register_handlers(bot, session_factory, notifier)
    try:
        bot.remove_webhook()
    except apihelper.ApiTelegramException as e:
        log.warning("remove_webhook failed: %s", e)
    threading.Thread(target=scheduler_loop, args=(session_factory, notifier), daemon=True).start()
    log.info("Starting polling")
    while True:
        try:
            bot.infinity_polling(timeout=60, long_polling_timeout=50, skip_pending=True,
                                 allowed_updates=["message", "callback_query"])
        except Exception as e:
            log.error("polling error: %s - retry in 3s", e)
            time.sleep(3)


if __name__ == "__main__":
    main()
