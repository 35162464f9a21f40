"""Escalation policy: point totals to discrete consequence levels."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class Level(str, Enum):
    LEVEL_1 = "LEVEL_1"
    LEVEL_2 = "LEVEL_2"
    LEVEL_3 = "LEVEL_3"


@dataclass(frozen=True)
class LevelSpec:
    level: Level
    name: str
    min_points: Optional[int]
    max_points: Optional[int]
    due_days: int
    actions: Tuple[str, ...]

    def matches(self, total: int) -> bool:
        if self.min_points is None:
            return False
        if total < self.min_points:
            return False
        return self.max_points is None or total <= self.max_points


class EscalationPolicy:
    """Stateless mapping from totals (and override facts) to a level.

    Built from the ``ESCALATION_MATRIX`` mapping in :mod:`contratrack.config`.
    LEVEL_3 carries no point range and is only reached through
    :meth:`is_performance_impact`.
    """

    def __init__(self, matrix: Mapping[str, Mapping], single_offense_limit: int = 3):
        self.single_offense_limit = single_offense_limit
        self._levels: Dict[Level, LevelSpec] = {}
        for key, row in matrix.items():
            level = Level(key)
            self._levels[level] = LevelSpec(
                level=level,
                name=row["name"],
                min_points=row.get("min"),
                max_points=row.get("max"),
                due_days=int(row["due_days"]),
                actions=tuple(row.get("actions") or ()),
            )
        missing = set(Level) - set(self._levels)
        if missing:
            raise ValueError(f"escalation matrix misses {sorted(m.value for m in missing)}")
        # point-based levels, highest threshold first
        self._ordered = sorted(
            (s for s in self._levels.values() if s.min_points is not None),
            key=lambda s: s.min_points,
            reverse=True,
        )

    # --- levels ---
    def level_for(self, total_points: int) -> Optional[Level]:
        if total_points <= 0:
            return None
        for spec in self._ordered:
            if spec.matches(total_points):
                return spec.level
        return None

    def is_performance_impact(self, single_offense_points: int, has_completed_training: bool) -> bool:
        """Either condition alone promotes the case to LEVEL_3."""
        return single_offense_points > self.single_offense_limit or bool(has_completed_training)

    def resolve(self, total_points: int, performance_impact: bool) -> Optional[Level]:
        """Level to store on a ledger, honouring a sticky performance impact."""
        if performance_impact:
            return Level.LEVEL_3
        return self.level_for(total_points)

    # --- level details ---
    def spec(self, level) -> LevelSpec:
        return self._levels[Level(level)]

    def name(self, level) -> Optional[str]:
        if level is None or not self.is_known(level):
            return None
        return self.spec(level).name

    def is_known(self, level) -> bool:
        try:
            Level(level)
        except ValueError:
            return False
        return True

    def actions(self, level) -> list:
        # fresh list so stored escalations never share state with the policy
        return list(self.spec(level).actions)

    def due_date(self, level, start: Optional[datetime] = None) -> datetime:
        start = start or datetime.utcnow()
        return start + timedelta(days=self.spec(level).due_days)

    def threshold(self, level) -> Optional[int]:
        return self.spec(level).min_points

    def next_threshold(self, total_points: int, level) -> Optional[int]:
        """Point total at which the next point-based level starts, if any."""
        if level is not None and self.is_known(level) and Level(level) is Level.LEVEL_3:
            return None
        above = [s.min_points for s in self._ordered if s.min_points > total_points]
        return min(above) if above else None
