"""Typed points-history entries.

Every change to a ledger total is described by one :class:`LedgerEntry`
before it is written to ``points_history``. The entry validates its own
shape, so malformed history can never be persisted::

    add       delta >= 0, raised by a contravention
    credit    delta <= 0, training completion credit
    decay     delta <= 0, legacy dormancy erosion
    reset     delta <= 0, fiscal-year zeroing (delta = -previous total)
    reversal  delta <= 0, contravention deleted, voided or moved away
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .errors import ValidationError


class EntryKind(str, Enum):
    ADD = "add"
    CREDIT = "credit"
    DECAY = "decay"
    RESET = "reset"
    REVERSAL = "reversal"


@dataclass(frozen=True)
class LedgerEntry:
    kind: EntryKind
    delta: int
    reason: str
    contravention_id: Optional[int] = None
    contravention_ref: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not isinstance(self.kind, EntryKind):
            try:
                object.__setattr__(self, "kind", EntryKind(self.kind))
            except ValueError:
                raise ValidationError(f"unknown history kind: {self.kind!r}") from None
        if isinstance(self.delta, bool) or not isinstance(self.delta, int):
            raise ValidationError("history delta must be an integer")
        if self.kind is EntryKind.ADD and self.delta < 0:
            raise ValidationError("add entries cannot remove points")
        if self.kind is not EntryKind.ADD and self.delta > 0:
            raise ValidationError(f"{self.kind.value} entries cannot increase points")
        if not (self.reason or "").strip():
            raise ValidationError("history entries need a reason")

    @classmethod
    def add(cls, delta: int, reason: str, contravention_id=None, contravention_ref=None, **kw) -> "LedgerEntry":
        return cls(EntryKind.ADD, delta, reason, contravention_id, contravention_ref, **kw)

    @classmethod
    def credit(cls, delta: int, reason: str, **kw) -> "LedgerEntry":
        return cls(EntryKind.CREDIT, delta, reason, **kw)

    @classmethod
    def decay(cls, delta: int, reason: str, **kw) -> "LedgerEntry":
        return cls(EntryKind.DECAY, delta, reason, **kw)

    @classmethod
    def reset(cls, previous_total: int, reason: str, **kw) -> "LedgerEntry":
        return cls(EntryKind.RESET, -previous_total, reason, **kw)

    @classmethod
    def reversal(cls, delta: int, reason: str, contravention_id=None, contravention_ref=None, **kw) -> "LedgerEntry":
        return cls(EntryKind.REVERSAL, delta, reason, contravention_id, contravention_ref, **kw)

