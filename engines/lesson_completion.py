"""Lesson completion workflow.

Turns one finished roleplay lesson into persisted effects: the behavior
assessment may override ratings and XP, the XP delta is bounded and applied,
rolling trait stats are blended, badges are evaluated, and everything is
written in a single transaction.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db

from engines.badges import Badge, BadgeContext, evaluate_badges, lesson_score
from engines.moderation import BehaviorViolationAssessment, BehaviorViolationAssessor
from engines.rolling_stats import RollingStat, RollingStatsEngine, default_stats, supplied_ratings
from engines.validation import UserNotFoundError, normalize_flags, validate_lesson_completion
from engines.xp import (
    SEVERITY_VIOLATION,
    LevelProgress,
    calculate_level,
    compute_next_xp,
    normalize_severity,
    sanitize_xp_delta,
)
from traits import TRAIT_IDS

_LOGGER = logging.getLogger(__name__)


@dataclass
class StatChange:
    before: float
    after: float
    delta: float
    rating: Optional[float]


@dataclass
class LessonCompletionResult:
    """Outcome of :meth:`LessonCompletionEngine.complete_lesson`."""

    log_id: int
    user_id: str
    lesson_id: str
    severity: str
    flags: List[str]
    xp_delta: int
    previous_xp: int
    new_xp: int
    level_before: LevelProgress
    level_after: LevelProgress
    ratings_used: Dict[str, float]
    stat_changes: Dict[str, StatChange]
    new_badges: List[Badge] = field(default_factory=list)
    assessment: Optional[BehaviorViolationAssessment] = None

    @property
    def leveled_up(self) -> bool:
        return self.level_after.level > self.level_before.level

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["leveled_up"] = self.leveled_up
        if self.assessment is None:
            payload.pop("assessment")
        else:
            payload["assessment"] = self.assessment.as_dict()
        return payload


class LessonCompletionEngine:
    """Apply a completed lesson to a user's XP, rolling stats and badges.

    Parameters
    ----------
    stats_engine:
        Blends lesson ratings into rolling stats. Defaults to the standard EMA.
    assessor:
        Behavior assessor run on the transcript when ``moderation_enabled``.
    moderation_enabled:
        When ``False`` the transcript is ignored and the caller-provided
        severity and flags are used as-is.
    """

    def __init__(
        self,
        stats_engine: Optional[RollingStatsEngine] = None,
        assessor: Optional[BehaviorViolationAssessor] = None,
        moderation_enabled: bool = True,
    ) -> None:
        self.stats_engine = stats_engine or RollingStatsEngine()
        self.assessor = assessor or BehaviorViolationAssessor()
        self.moderation_enabled = moderation_enabled

    # ----- public API --------------------------------------------------
    def complete_lesson(
        self,
        user_id: str,
        lesson_id: str,
        xp_gained: Any = 0,
        *,
        ratings: Optional[Mapping[str, Any]] = None,
        user_messages: Optional[Sequence[str]] = None,
        is_recommended: bool = False,
        severity: Optional[str] = None,
        flags: Optional[Sequence[str]] = None,
        trained_trait: Optional[str] = None,
        coach_summary: Optional[str] = None,
        recommended_next_focus: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LessonCompletionResult:
        validate_lesson_completion(
            {
                "user_id": user_id,
                "lesson_id": lesson_id,
                "user_messages": list(user_messages) if user_messages is not None else None,
                "flags": list(flags) if flags is not None else None,
            }
        )
        completed_at = now or datetime.now(timezone.utc)

        severity = normalize_severity(severity)
        merged_flags = normalize_flags(list(flags or []))
        lesson_ratings: Mapping[str, Any] = ratings or {}
        proposed_xp: Any = xp_gained

        assessment: Optional[BehaviorViolationAssessment] = None
        if self.moderation_enabled and user_messages:
            assessment = self.assessor.assess(list(user_messages), ratings, xp_gained)
            for flag in assessment.flags:
                if flag not in merged_flags:
                    merged_flags.append(flag)
            if assessment.violated:
                severity = SEVERITY_VIOLATION
                lesson_ratings = assessment.adjusted_ratings or {}
                proposed_xp = assessment.adjusted_xp_awarded

        ratings_used = supplied_ratings(lesson_ratings)
        xp_delta = sanitize_xp_delta(proposed_xp, severity)

        # Absolute XP and stat values are written back; read them under the same lock.
        with db.transaction() as con:
            user = db.get_user(user_id, con)
            if user is None:
                raise UserNotFoundError(user_id)
            previous_xp = int(user["xp"])
            new_xp = compute_next_xp(previous_xp, xp_delta)

            prior_stats = db.get_rolling_stats(user_id, con)
            update = self.stats_engine.update(prior_stats, ratings_used, now=completed_at)
            stat_changes = {
                trait_id: StatChange(
                    before=update.before[trait_id],
                    after=update.after[trait_id],
                    delta=update.after[trait_id] - update.before[trait_id],
                    rating=ratings_used.get(trait_id),
                )
                for trait_id in TRAIT_IDS
            }

            assignment_id = db.get_pending_assignment_id(user_id, lesson_id, con)
            badges = evaluate_badges(
                BadgeContext(
                    previous_xp=previous_xp,
                    new_xp=new_xp,
                    lesson_ratings=ratings_used,
                    completed_at=completed_at,
                    prior_lesson_count=db.count_lesson_logs(user_id, con),
                    completed_pending_assignment=assignment_id is not None,
                    role=user.get("role"),
                    dealership_count=len(user.get("dealership_ids") or []),
                ),
                earned=db.list_earned_badge_ids(user_id, con),
            )

            log_id = db.record_lesson_completion(
                user_id,
                {
                    "lesson_id": lesson_id,
                    "xp_gained": xp_delta,
                    "is_recommended": is_recommended,
                    "ratings": ratings_used,
                    "severity": severity,
                    "flags": merged_flags,
                    "score_delta": {trait_id: change.delta for trait_id, change in stat_changes.items()},
                    "trained_trait": trained_trait,
                    "coach_summary": coach_summary,
                    "recommended_next_focus": recommended_next_focus,
                    "created_at": completed_at,
                },
                new_xp=new_xp,
                stats=update.stats,
                badge_ids=[badge.id for badge in badges],
                assignment_id=assignment_id,
                con=con,
            )

        level_before = calculate_level(previous_xp)
        level_after = calculate_level(new_xp)
        _LOGGER.info(
            "Lesson %s completed by %s: severity=%s xp %s -> %s (level %s -> %s), badges=%s",
            lesson_id,
            user_id,
            severity,
            previous_xp,
            new_xp,
            level_before.level,
            level_after.level,
            [badge.id for badge in badges],
        )
        return LessonCompletionResult(
            log_id=log_id,
            user_id=user_id,
            lesson_id=lesson_id,
            severity=severity,
            flags=merged_flags,
            xp_delta=xp_delta,
            previous_xp=previous_xp,
            new_xp=new_xp,
            level_before=level_before,
            level_after=level_after,
            ratings_used=ratings_used,
            stat_changes=stat_changes,
            new_badges=badges,
            assessment=assessment,
        )


def user_stats(user_id: str) -> Dict[str, RollingStat]:
    """Return a user's rolling stats; traits never updated read as baseline."""

    if db.get_user(user_id) is None:
        raise UserNotFoundError(user_id)
    stored = db.get_rolling_stats(user_id)
    baseline = default_stats()
    return {trait_id: stored.get(trait_id, baseline[trait_id]) for trait_id in TRAIT_IDS}


def daily_lesson_limits(user_id: str, now: Optional[datetime] = None) -> Dict[str, bool]:
    """Report whether the recommended and the free-choice lesson were taken today.

    Days are UTC calendar days; a naive ``now`` is read as UTC, the same way
    lesson timestamps are stored.
    """

    current = db.as_utc(now or datetime.now(timezone.utc))
    start = current.replace(hour=0, minute=0, second=0, microsecond=0)
    logs = db.list_lesson_logs_between(user_id, start, start + timedelta(days=1))
    return {
        "recommended_taken": any(log["is_recommended"] for log in logs),
        "other_taken": any(not log["is_recommended"] for log in logs),
    }


def team_activity(user_ids: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Aggregate lesson activity and rolling stats for a manager's team."""

    members = db.list_users(user_ids)
    activity: List[Dict[str, Any]] = []
    trait_totals: Dict[str, float] = {trait_id: 0.0 for trait_id in TRAIT_IDS}
    trait_counts: Dict[str, int] = {trait_id: 0 for trait_id in TRAIT_IDS}
    total_lessons = 0

    for member in members:
        logs = db.list_lesson_logs(member["user_id"])
        scores = [score for score in (lesson_score(log["ratings"]) for log in logs) if score is not None]
        total_lessons += len(logs)
        activity.append(
            {
                "user_id": member["user_id"],
                "name": member["name"],
                "lessons_completed": len(logs),
                "total_xp": member["xp"],
                "level": calculate_level(member["xp"]).level,
                "avg_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
                "last_interaction": logs[0]["created_at"] if logs else None,
            }
        )
        for trait_id, stat in db.get_rolling_stats(member["user_id"]).items():
            if trait_id in trait_totals:
                trait_totals[trait_id] += stat.score
                trait_counts[trait_id] += 1

    avg_scores: Optional[Dict[str, float]] = None
    if any(trait_counts.values()):
        avg_scores = {
            trait_id: round(trait_totals[trait_id] / trait_counts[trait_id], 2) if trait_counts[trait_id] else 0.0
            for trait_id in TRAIT_IDS
        }

    return {
        "team_activity": activity,
        "manager_stats": {"total_lessons": total_lessons, "avg_scores": avg_scores},
    }
