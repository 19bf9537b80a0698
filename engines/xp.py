"""XP curve and level derivation.

A user's cumulative ``xp`` is the only stored value; level and progress are
always derived from it. Advancing past level ``L`` costs
``floor(BASE_XP * L ** EXPONENT)`` points and the curve stops at
``MAX_LEVEL``.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

BASE_XP = 100
EXPONENT = 1.5
MAX_LEVEL = 100

MAX_NORMAL_XP_AWARD = 100
MAX_BEHAVIOR_XP_PENALTY = 100

SEVERITY_NORMAL = "normal"
SEVERITY_VIOLATION = "behavior_violation"


@dataclass(frozen=True)
class LevelProgress:
    """Derived level information for a given XP total."""

    level: int
    level_xp: float
    next_level_xp: float
    progress: int
    total_xp_for_next_level: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def level_threshold(level: int) -> int:
    """XP needed to advance from ``level`` to ``level + 1``."""

    return int(math.floor(BASE_XP * math.pow(level, EXPONENT)))


def _build_cumulative() -> Tuple[int, ...]:
    # _CUMULATIVE[L - 1] is the total XP at which level L is reached.
    totals = [0]
    for level in range(1, MAX_LEVEL):
        totals.append(totals[-1] + level_threshold(level))
    return tuple(totals)


_CUMULATIVE = _build_cumulative()


def cumulative_xp_for_level(level: int) -> int:
    """Total XP required to reach ``level`` (clamped to ``[1, MAX_LEVEL]``)."""

    level = max(1, min(MAX_LEVEL, int(level)))
    return _CUMULATIVE[level - 1]


def _baseline() -> LevelProgress:
    threshold = level_threshold(1)
    return LevelProgress(
        level=1,
        level_xp=0,
        next_level_xp=threshold,
        progress=0,
        total_xp_for_next_level=threshold,
    )


def calculate_level(xp: Any) -> LevelProgress:
    """Walk the XP curve and report the level reached by ``xp``.

    Negative, non-finite or non-numeric values yield the level-1 baseline.
    """

    try:
        xp = float(xp)
    except (TypeError, ValueError):
        return _baseline()
    if not math.isfinite(xp) or xp < 0:
        return _baseline()
    if xp.is_integer():
        xp = int(xp)

    level = 1
    required = 0
    while level < MAX_LEVEL:
        next_total = required + level_threshold(level)
        if xp < next_total:
            break
        required = next_total
        level += 1

    if level >= MAX_LEVEL:
        beyond = xp - cumulative_xp_for_level(MAX_LEVEL)
        return LevelProgress(level=MAX_LEVEL, level_xp=beyond, next_level_xp=beyond, progress=100)

    threshold = level_threshold(level)
    level_xp = xp - required
    progress = int(math.floor(level_xp / threshold * 100))
    return LevelProgress(
        level=level,
        level_xp=level_xp,
        next_level_xp=threshold,
        progress=progress,
        total_xp_for_next_level=required + threshold,
    )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_severity(severity: Optional[str]) -> str:
    return SEVERITY_VIOLATION if severity == SEVERITY_VIOLATION else SEVERITY_NORMAL


def sanitize_xp_delta(xp_gained: Any, severity: Optional[str]) -> int:
    """Bound a proposed XP change according to the interaction severity.

    Normal lessons award between 0 and ``MAX_NORMAL_XP_AWARD``. A behavior
    violation can only take XP away, by at most ``MAX_BEHAVIOR_XP_PENALTY``.
    """

    try:
        numeric = float(xp_gained)
    except (TypeError, ValueError):
        numeric = 0.0
    delta = round_half_up(numeric) if math.isfinite(numeric) else 0

    if normalize_severity(severity) == SEVERITY_VIOLATION:
        if delta > 0:
            return 0
        return max(-MAX_BEHAVIOR_XP_PENALTY, delta)
    return max(0, min(MAX_NORMAL_XP_AWARD, delta))


def compute_next_xp(current_xp: Any, xp_delta: int) -> int:
    """Apply ``xp_delta`` to ``current_xp``; stored XP never drops below zero."""

    try:
        current = float(current_xp)
    except (TypeError, ValueError):
        current = 0.0
    if not math.isfinite(current) or current < 0:
        current = 0.0
    return max(0, int(current) + int(xp_delta))
