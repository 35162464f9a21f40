"""Notification delivery for compliance events.

Delivery is fire-and-forget: operations queue events on a
:class:`NotificationDispatcher` while they run and the dispatcher sends them
only after the operation's transaction committed. Every delivery error is
logged and swallowed; it never reaches the caller.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from telebot import apihelper
from telebot.types import InlineKeyboardButton, InlineKeyboardMarkup

from contratrack.callbacks import mk_cb
from .models import Employee

log = logging.getLogger(__name__)

CONTRAVENTION_LOGGED = "contravention_logged"
ESCALATION_TRIGGERED = "escalation_triggered"
TRAINING_ASSIGNED = "training_assigned"
TRAINING_OVERDUE = "training_overdue"
APPROVAL_REQUESTED = "approval_requested"
CONTRAVENTION_REJECTED = "contravention_rejected"
CONTRAVENTION_COMPLETED = "contravention_completed"

TITLES = {
    CONTRAVENTION_LOGGED: "New contravention logged",
    ESCALATION_TRIGGERED: "Escalation triggered",
    TRAINING_ASSIGNED: "Mandatory training assigned",
    TRAINING_OVERDUE: "Training overdue",
    APPROVAL_REQUESTED: "Approval requested",
    CONTRAVENTION_REJECTED: "Contravention rejected",
    CONTRAVENTION_COMPLETED: "Contravention completed",
}


class LogNotifier:
    """Writes events to the log only. Default when no bot is configured."""

    def send(self, employee: Employee, event_type: str, payload: Dict[str, Any]) -> None:
        log.info("notify employee=%s event=%s payload=%s", employee.id, event_type, payload)


class TelegramNotifier:
    """Delivers events as Telegram messages, retrying with backoff."""

    def __init__(self, bot, sleep: Callable[[float], None] = time.sleep, attempts: int = 6):
        self.bot = bot
        self.sleep = sleep
        self.attempts = attempts

    def send(self, employee: Employee, event_type: str, payload: Dict[str, Any]) -> None:
        if not employee.telegram_chat_id:
            log.info("notify skipped employee=%s event=%s: no telegram chat", employee.id, event_type)
            return
        kwargs = {}
        if event_type == APPROVAL_REQUESTED and payload.get("approval_id"):
            kwargs["reply_markup"] = approval_keyboard(payload["approval_id"])
        self.send_safe(format_message(event_type, payload), employee.telegram_chat_id, **kwargs)

    def send_safe(self, text: str, chat_id: int, **kwargs):
        delay = 0.5
        for _ in range(self.attempts - 1):
            try:
                return self.bot.send_message(chat_id, text, **kwargs)
            except apihelper.ApiTelegramException as e:
                sc = getattr(e.result, "status_code", None)
                log.warning("telegram send failed chat=%s status=%s", chat_id, sc)
                self.sleep(delay)
                delay *= 2
            except Exception as e:
                log.warning("telegram send failed chat=%s: %s", chat_id, e)
                self.sleep(delay)
                delay *= 2
        return self.bot.send_message(chat_id, text[:4000], **kwargs)


def format_message(event_type: str, payload: Dict[str, Any]) -> str:
    lines = [TITLES.get(event_type, event_type)]
    for key, val in payload.items():
        if key == "approval_id" or val is None:
            continue
        lines.append(f"{key.replace('_', ' ')}: {val}")
    return "\n".join(lines)


def approval_keyboard(approval_id: int) -> InlineKeyboardMarkup:
    kb = InlineKeyboardMarkup(row_width=2)
    kb.add(
        InlineKeyboardButton("Approve", callback_data=mk_cb("apr", id=approval_id, d="A")),
        InlineKeyboardButton("Reject", callback_data=mk_cb("apr", id=approval_id, d="R")),
    )
    return kb


class NotificationDispatcher:
    """Collects events during an operation and delivers them after commit."""

    def __init__(self, notifier=None):
        self.notifier = notifier or LogNotifier()
        self._pending: List[Tuple[int, str, Dict[str, Any]]] = []

    @property
    def pending(self) -> List[Tuple[int, str, Dict[str, Any]]]:
        return list(self._pending)

    def queue(self, employee_id: Optional[int], event_type: str, **payload: Any) -> None:
        if employee_id is None:
            return
        self._pending.append((employee_id, event_type, payload))

    def discard(self) -> None:
        if self._pending:
            log.info("dropping %s queued notifications after rollback", len(self._pending))
        self._pending = []

    def flush(self, session) -> int:
        """Send queued events. Returns how many were delivered without error."""
        pending, self._pending = self._pending, []
        delivered = 0
        for employee_id, event_type, payload in pending:
            try:
                employee = session.get(Employee, employee_id)
                if employee is None:
                    log.warning("notify skipped: employee %s vanished", employee_id)
                    continue
                self.notifier.send(employee, event_type, payload)
                delivered += 1
            except Exception:
                log.exception("notification failed employee=%s event=%s", employee_id, event_type)
        return delivered
