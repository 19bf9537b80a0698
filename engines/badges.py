"""Badge catalogue and award rules evaluated on lesson completion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from engines.rolling_stats import clamp_ratings
from engines.xp import calculate_level


@dataclass(frozen=True)
class Badge:
    id: str
    name: str
    description: str


ALL_BADGES: Sequence[Badge] = (
    Badge("first-drive", "First Drive", "Completed a first lesson."),
    Badge("xp-1000", "1K Club", "Earned 1,000 XP."),
    Badge("xp-5000", "5K Club", "Earned 5,000 XP."),
    Badge("xp-10000", "10K Club", "Earned 10,000 XP."),
    Badge("level-10", "Level 10", "Reached level 10."),
    Badge("level-25", "Level 25", "Reached level 25."),
    Badge("top-performer", "Top Performer", "Averaged 95 or better across every trait in a lesson."),
    Badge("perfectionist", "Perfectionist", "Scored 100 on every trait in a lesson."),
    Badge("night-owl", "Night Owl", "Completed a lesson between midnight and 4am."),
    Badge("early-bird", "Early Bird", "Completed a lesson between 4am and 7am."),
    Badge("managers-pick", "Manager's Pick", "Completed a lesson assigned by a manager."),
    Badge("empire-builder", "Empire Builder", "Owns more than one dealership."),
)

BADGES_BY_ID: Dict[str, Badge] = {badge.id: badge for badge in ALL_BADGES}

XP_MILESTONES = ((1000, "xp-1000"), (5000, "xp-5000"), (10000, "xp-10000"))
LEVEL_MILESTONES = ((10, "level-10"), (25, "level-25"))

TOP_PERFORMER_SCORE = 95.0
PERFECT_SCORE = 100.0


@dataclass
class BadgeContext:
    """Facts about a completed lesson needed to decide which badges it earns."""

    previous_xp: int
    new_xp: int
    lesson_ratings: Mapping[str, float]
    completed_at: datetime
    prior_lesson_count: int = 0
    completed_pending_assignment: bool = False
    role: Optional[str] = None
    dealership_count: int = 0


def lesson_score(ratings: Mapping[str, float]) -> Optional[float]:
    """Mean rating across every tracked trait; unrated traits count as 0."""
    if not ratings:
        return None
    complete = clamp_ratings(ratings)
    return sum(complete.values()) / len(complete)


def evaluate_badges(context: BadgeContext, earned: Iterable[str] = ()) -> List[Badge]:
    """Return badges newly earned by this lesson, skipping ones already held.

    Night-owl and early-bird use the wall-clock hour of ``completed_at`` as
    given. The completion flow stamps lessons in UTC, so callers wanting the
    learner's local hour pass a ``now`` in that timezone.
    """

    already = set(earned)
    awarded: List[str] = []

    def award(badge_id: str) -> None:
        if badge_id not in already and badge_id not in awarded:
            awarded.append(badge_id)

    if context.prior_lesson_count == 0:
        award("first-drive")

    for mark, badge_id in XP_MILESTONES:
        if context.previous_xp < mark <= context.new_xp:
            award(badge_id)

    level_before = calculate_level(context.previous_xp).level
    level_after = calculate_level(context.new_xp).level
    for mark, badge_id in LEVEL_MILESTONES:
        if level_before < mark <= level_after:
            award(badge_id)

    score = lesson_score(context.lesson_ratings)
    if score is not None:
        if score >= TOP_PERFORMER_SCORE:
            award("top-performer")
        if score == PERFECT_SCORE:
            award("perfectionist")

    hour = context.completed_at.hour
    if 0 <= hour < 4:
        award("night-owl")
    if 4 <= hour < 7:
        award("early-bird")

    if context.completed_pending_assignment:
        award("managers-pick")

    if context.role == "Owner" and context.dealership_count > 1:
        award("empire-builder")

    return [BADGES_BY_ID[badge_id] for badge_id in awarded]
