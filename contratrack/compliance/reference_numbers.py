"""Sequential contravention reference numbers, ``CONTRA-<year>-<seq>``."""
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from contratrack.db import insert_ignore
from .models import Contravention, ReferenceCounter

log = logging.getLogger(__name__)

PREFIX = "CONTRA"


def format_reference(year: int, seq: int) -> str:
    return f"{PREFIX}-{year}-{seq:03d}"


def parse_sequence(reference_no: str, year: int):
    """Return the sequence part of ``reference_no`` for ``year``, else None."""
    head = f"{PREFIX}-{year}-"
    if not reference_no or not reference_no.startswith(head):
        return None
    tail = reference_no[len(head):]
    return int(tail) if tail.isdigit() else None


class ReferenceNumberGenerator:
    """Hands out the next number for a year from a locked counter row.

    The counter row for a year is created on first use and seeded from the
    highest reference already stored, so numbers written before the counter
    existed are never reused. The increment is a single ``UPDATE`` inside the
    caller's transaction: concurrent callers queue on the row lock.
    """

    def __init__(self, session: Session):
        self.session = session

    def _highest_existing(self, year: int) -> int:
        rows = (
            self.session.query(Contravention.reference_no)
            .filter(Contravention.reference_no.like(f"{PREFIX}-{year}-%"))
            .all()
        )
        seqs = [parse_sequence(r.reference_no, year) for r in rows]
        return max([s for s in seqs if s is not None], default=0)

    def next(self, year: int) -> str:
        insert_ignore(
            self.session, ReferenceCounter, ["year"],
            year=year, last_value=self._highest_existing(year),
        )
        self.session.execute(
            update(ReferenceCounter)
            .where(ReferenceCounter.year == year)
            .values(last_value=ReferenceCounter.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        counter = (
            self.session.query(ReferenceCounter)
            .filter(ReferenceCounter.year == year)
            .with_for_update()
            .populate_existing()
            .one()
        )
        reference = format_reference(year, counter.last_value)
        log.debug("reference number issued %s", reference)
        return reference
