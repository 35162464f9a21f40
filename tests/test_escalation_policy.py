from datetime import datetime

import pytest

from contratrack.config import ESCALATION_MATRIX
from contratrack.compliance.escalation_policy import EscalationPolicy, Level


@pytest.fixture
def policy():
    return EscalationPolicy(ESCALATION_MATRIX, single_offense_limit=3)


def test_level_thresholds(policy):
    assert policy.level_for(0) is None
    assert policy.level_for(-2) is None
    assert policy.level_for(1) == policy.level_for(2) == Level.LEVEL_1
    assert policy.level_for(3) == policy.level_for(100) == Level.LEVEL_2


def test_performance_impact_rules(policy):
    assert policy.is_performance_impact(5, False)
    assert policy.is_performance_impact(4, False)
    assert not policy.is_performance_impact(3, False)
    assert policy.is_performance_impact(1, True)


def test_resolve_keeps_level_3_when_flagged(policy):
    assert policy.resolve(1, True) == Level.LEVEL_3
    assert policy.resolve(0, True) == Level.LEVEL_3
    assert policy.resolve(4, False) == Level.LEVEL_2


def test_level_details(policy):
    assert policy.name("LEVEL_1") == "Verbal Advisory"
    assert policy.name(Level.LEVEL_2) == "Mandatory Training"
    assert policy.name("LEVEL_3") == "Performance Impact"
    assert policy.name("LEVEL_5") is None
    assert policy.name(None) is None
    assert policy.actions(Level.LEVEL_3) == [
        "Affects performance review",
        "Manager to review employee contravention record at end of performance cycle",
    ]


def test_actions_are_copies(policy):
    actions = policy.actions(Level.LEVEL_1)
    actions.append("extra")
    assert "extra" not in policy.actions(Level.LEVEL_1)


def test_due_dates(policy):
    start = datetime(2025, 6, 1, 12, 0)
    assert policy.due_date(Level.LEVEL_1, start) == datetime(2025, 6, 8, 12, 0)
    assert policy.due_date(Level.LEVEL_2, start) == datetime(2025, 7, 1, 12, 0)
    assert policy.due_date(Level.LEVEL_3, start) == datetime(2025, 6, 2, 12, 0)


def test_next_threshold(policy):
    assert policy.next_threshold(0, None) == 1
    assert policy.next_threshold(1, Level.LEVEL_1) == 3
    assert policy.next_threshold(5, Level.LEVEL_2) is None
    assert policy.next_threshold(1, Level.LEVEL_3) is None
    assert policy.next_threshold(1, "LEVEL_4") == 3


def test_matrix_must_define_every_level():
    partial = {k: v for k, v in ESCALATION_MATRIX.items() if k != "LEVEL_3"}
    with pytest.raises(ValueError):
        EscalationPolicy(partial)
