from datetime import datetime, timezone

import pytest

from engines.badges import ALL_BADGES, BADGES_BY_ID, BadgeContext, evaluate_badges, lesson_score
from engines.xp import cumulative_xp_for_level
from traits import TRAIT_IDS

NOON = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _ratings(value):
    return {trait_id: float(value) for trait_id in TRAIT_IDS}


def _ids(badges):
    return [badge.id for badge in badges]


def test_catalogue_ids_are_unique():
    assert len(BADGES_BY_ID) == len(ALL_BADGES)


def test_first_lesson_earns_first_drive():
    context = BadgeContext(previous_xp=0, new_xp=60, lesson_ratings=_ratings(70), completed_at=NOON)
    assert _ids(evaluate_badges(context)) == ["first-drive"]


def test_badges_already_held_are_not_repeated():
    context = BadgeContext(previous_xp=0, new_xp=60, lesson_ratings=_ratings(70), completed_at=NOON)
    assert evaluate_badges(context, earned=["first-drive"]) == []


def test_xp_milestones_only_on_crossing():
    crossing = BadgeContext(
        previous_xp=950, new_xp=1010, lesson_ratings=_ratings(70), completed_at=NOON, prior_lesson_count=12
    )
    assert "xp-1000" in _ids(evaluate_badges(crossing))

    already_past = BadgeContext(
        previous_xp=1200, new_xp=1290, lesson_ratings=_ratings(70), completed_at=NOON, prior_lesson_count=20
    )
    assert "xp-1000" not in _ids(evaluate_badges(already_past))


def test_level_milestone():
    level_ten = cumulative_xp_for_level(10)
    context = BadgeContext(
        previous_xp=level_ten - 5,
        new_xp=level_ten + 20,
        lesson_ratings=_ratings(60),
        completed_at=NOON,
        prior_lesson_count=80,
    )
    assert "level-10" in _ids(evaluate_badges(context))


def test_score_badges():
    perfect = BadgeContext(
        previous_xp=100, new_xp=200, lesson_ratings=_ratings(100), completed_at=NOON, prior_lesson_count=3
    )
    assert _ids(evaluate_badges(perfect)) == ["top-performer", "perfectionist"]

    strong = BadgeContext(
        previous_xp=100, new_xp=200, lesson_ratings=_ratings(96), completed_at=NOON, prior_lesson_count=3
    )
    assert _ids(evaluate_badges(strong)) == ["top-performer"]


def test_time_of_day_badges():
    night = BadgeContext(
        previous_xp=10,
        new_xp=20,
        lesson_ratings={},
        completed_at=datetime(2026, 10, 17, 2, 30, tzinfo=timezone.utc),
        prior_lesson_count=1,
    )
    early = BadgeContext(
        previous_xp=10,
        new_xp=20,
        lesson_ratings={},
        completed_at=datetime(2026, 10, 17, 5, 0, tzinfo=timezone.utc),
        prior_lesson_count=1,
    )
    assert _ids(evaluate_badges(night)) == ["night-owl"]
    assert _ids(evaluate_badges(early)) == ["early-bird"]


def test_assignment_and_owner_badges():
    context = BadgeContext(
        previous_xp=10,
        new_xp=20,
        lesson_ratings=_ratings(50),
        completed_at=NOON,
        prior_lesson_count=1,
        completed_pending_assignment=True,
        role="Owner",
        dealership_count=2,
    )
    assert _ids(evaluate_badges(context)) == ["managers-pick", "empire-builder"]


def test_partial_perfect_ratings_earn_no_score_badges():
    context = BadgeContext(
        previous_xp=100, new_xp=200, lesson_ratings={"empathy": 100.0}, completed_at=NOON, prior_lesson_count=3
    )
    assert evaluate_badges(context) == []


def test_lesson_score_averages_every_trait():
    assert lesson_score({}) is None
    assert lesson_score(_ratings(70)) == 70
    assert lesson_score({"empathy": 80, "trust": 60}) == pytest.approx(140 / 6)
    assert lesson_score({"followUp": 60}) == pytest.approx(10.0)
