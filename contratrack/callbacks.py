"""Signed callback data for the approver's inline buttons.

Approval-request messages carry two buttons, Approve and Reject. Their
``callback_data`` is a compact JSON payload prefixed with a short SHA1
signature, so a forged or edited payload is rejected before the workflow
sees it.

Public helpers:
    mk_cb(action, **kwargs) -> str
        Create a signed callback data string.
    parse_cb(data: str) -> dict | None
        Validate signature and return payload dictionary.
    parse_approval_callback(data: str) -> ApprovalCallback
        Decode an approve/reject button press.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, cast

CALLBACK_SECRET = os.getenv("CALLBACK_SECRET", "change-me").encode("utf-8")

APPROVAL_ACTION = "apr"
DECISIONS = {"A": "APPROVED", "R": "REJECTED"}


def _cb_sign(payload: str) -> str:
    """Return the first six hex digits of the keyed SHA1 of ``payload``."""

    return hashlib.sha1(CALLBACK_SECRET + payload.encode("utf-8")).hexdigest()[:6]


def mk_cb(action: str, **kwargs: Any) -> str:
    """Create signed callback data string.

    Telegram limits ``callback_data`` to 64 bytes, so keys and values should
    stay short (``id`` and a one-letter decision for approvals).
    """

    payload: Dict[str, Any] = {"v": 1, "a": action, **kwargs}
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"{_cb_sign(raw)}|{raw}"


def parse_cb(data: str) -> Optional[Dict[str, Any]]:
    """Return the payload if the signature matches, otherwise ``None``."""

    try:
        sig, raw = data.split("|", 1)
    except (AttributeError, ValueError):
        return None
    if _cb_sign(raw) != sig:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return cast(Dict[str, Any], payload)


@dataclass
class ApprovalCallback:
    """Decoded approve/reject button press.

    Attributes
    ----------
    ok:
        ``True`` if the payload is a valid approval decision.
    approval_id:
        Id of the approval request being decided.
    decision:
        ``"APPROVED"`` or ``"REJECTED"``.
    error:
        Short reason when ``ok`` is ``False``.
    """

    ok: bool
    approval_id: Optional[int] = None
    decision: Optional[str] = None
    error: str | None = None


def parse_approval_callback(data: str) -> ApprovalCallback:
    payload = parse_cb(data)
    if payload is None:
        return ApprovalCallback(False, error="bad-signature")
    if payload.get("a") != APPROVAL_ACTION:
        return ApprovalCallback(False, error="not-approval")
    decision = DECISIONS.get(payload.get("d"))
    approval_id = payload.get("id")
    if decision is None or not isinstance(approval_id, int):
        return ApprovalCallback(False, error="bad-payload")
    return ApprovalCallback(True, approval_id=approval_id, decision=decision)
