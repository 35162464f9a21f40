from datetime import date

from contratrack.compliance.models import Contravention, ContraventionStatus, ReferenceCounter, Severity
from contratrack.compliance.reference_numbers import ReferenceNumberGenerator, format_reference, parse_sequence


def test_format_and_parse():
    assert format_reference(2025, 7) == "CONTRA-2025-007"
    assert format_reference(2025, 1234) == "CONTRA-2025-1234"
    assert parse_sequence("CONTRA-2025-1234", 2025) == 1234
    assert parse_sequence("CONTRA-2024-001", 2025) is None
    assert parse_sequence("CONTRA-2025-abc", 2025) is None
    assert parse_sequence(None, 2025) is None


def test_sequence_per_year(session):
    gen = ReferenceNumberGenerator(session)
    assert gen.next(2025) == "CONTRA-2025-001"
    assert gen.next(2025) == "CONTRA-2025-002"
    assert gen.next(2026) == "CONTRA-2026-001"
    session.commit()
    assert ReferenceNumberGenerator(session).next(2025) == "CONTRA-2025-003"


def test_rolled_back_numbers_are_reissued(session):
    gen = ReferenceNumberGenerator(session)
    assert gen.next(2025) == "CONTRA-2025-001"
    session.rollback()
    assert gen.next(2025) == "CONTRA-2025-001"


def test_counter_seeded_from_existing_references(session, seed):
    emp = seed.employee()
    ctype = seed.ctype()
    for ref in ("CONTRA-2025-009", "CONTRA-2025-041", "CONTRA-2024-300"):
        session.add(Contravention(
            reference_no=ref, employee_id=emp.id, logged_by_id=emp.id, type_id=ctype.id,
            severity=Severity.LOW, points=0, incident_date=date(2025, 1, 1),
            status=ContraventionStatus.COMPLETED,
        ))
    session.commit()

    gen = ReferenceNumberGenerator(session)
    assert gen.next(2025) == "CONTRA-2025-042"
    assert gen.next(2024) == "CONTRA-2024-301"
    assert session.get(ReferenceCounter, 2025).last_value == 42
