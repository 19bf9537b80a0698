import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

import db
from engines.lesson_completion import (
    LessonCompletionEngine,
    daily_lesson_limits,
    team_activity,
    user_stats,
)
from engines.rolling_stats import BASELINE, RollingStatsEngine
from engines.validation import LessonCompletionValidationError, UserNotFoundError
from traits import TRAIT_IDS

NOON = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _ratings(value):
    return {trait_id: float(value) for trait_id in TRAIT_IDS}


@pytest.fixture
def engine():
    return LessonCompletionEngine(stats_engine=RollingStatsEngine(alpha=0.25))


def test_unknown_user_is_rejected(temp_db, engine):
    with pytest.raises(UserNotFoundError):
        engine.complete_lesson("ghost", "lesson-1", 40, now=NOON)


@pytest.mark.parametrize("user_id, lesson_id", [("", "lesson-1"), ("alice", "  "), (None, "lesson-1")])
def test_identifiers_are_validated(temp_db, engine, user_id, lesson_id):
    with pytest.raises(LessonCompletionValidationError):
        engine.complete_lesson(user_id, lesson_id, 40, now=NOON)


def test_normal_completion_updates_xp_stats_and_log(make_user, engine):
    make_user("alice", xp=0)

    result = engine.complete_lesson(
        "alice",
        "lesson-1",
        150,
        ratings={"empathy": 90},
        user_messages=["Thanks for your patience, let me walk you through the options."],
        is_recommended=True,
        trained_trait="empathy",
        coach_summary="Warm opener.",
        now=NOON,
    )

    assert result.severity == "normal"
    assert result.xp_delta == 100
    assert (result.previous_xp, result.new_xp) == (0, 100)
    assert result.level_before.level == 1
    assert result.level_after.level == 2
    assert result.leveled_up is True
    assert result.ratings_used == {"empathy": 90.0}
    assert result.stat_changes["empathy"].after == pytest.approx(60.0)
    assert result.stat_changes["empathy"].rating == 90.0
    assert result.stat_changes["listening"].delta == 0
    assert result.stat_changes["listening"].rating is None
    assert [badge.id for badge in result.new_badges] == ["first-drive"]
    assert result.assessment is not None and result.assessment.violated is False

    assert db.get_user("alice")["xp"] == 100
    stats = db.get_rolling_stats("alice")
    assert stats["empathy"].score == pytest.approx(60.0)
    assert stats["listening"].score == BASELINE
    assert db.list_earned_badge_ids("alice") == ["first-drive"]

    logs = db.list_lesson_logs("alice")
    assert len(logs) == 1
    log = logs[0]
    assert log["log_id"] == result.log_id
    assert log["xp_gained"] == 100
    assert log["is_recommended"] is True
    assert log["severity"] == "normal"
    assert log["ratings"] == {"empathy": 90.0}
    assert log["score_delta"]["empathy"] == pytest.approx(10.0)
    assert log["coach_summary"] == "Warm opener."
    assert log["created_at"] == NOON


def test_violation_overrides_ratings_and_xp(make_user, engine):
    make_user("bob", xp=500)

    result = engine.complete_lesson(
        "bob",
        "lesson-2",
        50,
        ratings=_ratings(80),
        user_messages=["I will kill you"],
        now=NOON,
    )

    assert result.severity == "behavior_violation"
    assert "threatening_language" in result.flags
    assert result.xp_delta == -100
    assert result.new_xp == 400
    assert result.ratings_used == pytest.approx(_ratings(10))
    assert all(change.after < change.before for change in result.stat_changes.values())

    log = db.list_lesson_logs("bob")[0]
    assert log["severity"] == "behavior_violation"
    assert log["xp_gained"] == -100
    assert "threatening_language" in log["flags"]
    assert db.get_user("bob")["xp"] == 400


def test_penalty_never_drives_xp_negative(make_user, engine):
    make_user("carol", xp=20)
    result = engine.complete_lesson("carol", "lesson-3", 30, user_messages=["I will kill you"], now=NOON)
    assert result.new_xp == 0
    assert db.get_user("carol")["xp"] == 0


def test_caller_reported_violation_cannot_award_xp(make_user, engine):
    make_user("dan", xp=300)
    result = engine.complete_lesson(
        "dan", "lesson-4", 80, severity="behavior_violation", flags=["manual_review", "manual_review"], now=NOON
    )
    assert result.severity == "behavior_violation"
    assert result.xp_delta == 0
    assert result.flags == ["manual_review"]
    assert result.assessment is None


def test_moderation_can_be_disabled(make_user):
    make_user("erin", xp=0)
    engine = LessonCompletionEngine(moderation_enabled=False)
    result = engine.complete_lesson("erin", "lesson-5", 40, user_messages=["I will kill you"], now=NOON)
    assert result.severity == "normal"
    assert result.xp_delta == 40
    assert result.assessment is None


def test_assigned_lesson_awards_managers_pick(make_user, engine):
    make_user("frank", xp=0)
    db.assign_lesson("frank", "lesson-6", "manager-1")

    result = engine.complete_lesson("frank", "lesson-6", 20, ratings=_ratings(70), now=NOON)

    assert "managers-pick" in [badge.id for badge in result.new_badges]
    assert db.list_pending_assignments("frank") == []


def test_second_lesson_does_not_repeat_first_drive(make_user, engine):
    make_user("gina", xp=0)
    engine.complete_lesson("gina", "lesson-1", 20, ratings=_ratings(70), now=NOON)
    second = engine.complete_lesson("gina", "lesson-2", 20, ratings=_ratings(70), now=NOON + timedelta(hours=1))
    assert "first-drive" not in [badge.id for badge in second.new_badges]
    assert second.previous_xp == 20
    assert second.new_xp == 40


def test_result_serialises(make_user, engine):
    make_user("hank", xp=0)
    payload = engine.complete_lesson("hank", "lesson-1", 20, ratings={"trust": 88}, now=NOON).as_dict()
    assert payload["leveled_up"] is False
    assert payload["level_after"]["level"] == 1
    assert payload["stat_changes"]["trust"]["rating"] == 88.0
    assert "assessment" not in payload


def test_user_stats_fill_untouched_traits(make_user, engine):
    make_user("ivy", xp=0)
    engine.complete_lesson("ivy", "lesson-1", 20, ratings={"closing": 100}, now=NOON)

    stats = user_stats("ivy")
    assert set(stats) == set(TRAIT_IDS)
    assert stats["closing"].score == pytest.approx(62.5)
    assert stats["empathy"].score == BASELINE

    with pytest.raises(UserNotFoundError):
        user_stats("nobody")


def test_daily_lesson_limits(make_user, engine):
    make_user("jill", xp=0)
    assert daily_lesson_limits("jill", NOON) == {"recommended_taken": False, "other_taken": False}

    engine.complete_lesson("jill", "lesson-1", 20, is_recommended=True, now=NOON)
    assert daily_lesson_limits("jill", NOON + timedelta(hours=2)) == {
        "recommended_taken": True,
        "other_taken": False,
    }
    assert daily_lesson_limits("jill", NOON + timedelta(days=1)) == {
        "recommended_taken": False,
        "other_taken": False,
    }



def test_daily_limits_read_naive_times_as_utc(make_user, engine):
    make_user("joe", xp=0)
    engine.complete_lesson("joe", "lesson-1", 20, now=datetime(2026, 10, 17, 23, 30))

    assert daily_lesson_limits("joe", datetime(2026, 10, 17, 23, 45))["other_taken"] is True
    assert daily_lesson_limits("joe", datetime(2026, 10, 18, 0, 15))["other_taken"] is False


def test_partial_perfect_rating_is_not_a_perfect_lesson(make_user, engine):
    make_user("pat", xp=0)
    result = engine.complete_lesson("pat", "lesson-1", 10, ratings={"empathy": 100}, now=NOON)
    assert [badge.id for badge in result.new_badges] == ["first-drive"]

def test_team_activity_rollup(make_user, engine):
    make_user("kim", xp=0)
    make_user("lee", xp=0)
    make_user("max", xp=0)
    engine.complete_lesson("kim", "lesson-1", 50, ratings=_ratings(80), now=NOON)
    engine.complete_lesson("kim", "lesson-2", 30, ratings=_ratings(60), now=NOON + timedelta(hours=1))
    engine.complete_lesson("lee", "lesson-1", 10, ratings=_ratings(40), now=NOON)

    summary = team_activity(["kim", "lee", "max"])
    by_user = {row["user_id"]: row for row in summary["team_activity"]}

    assert by_user["kim"]["lessons_completed"] == 2
    assert by_user["kim"]["total_xp"] == 80
    assert by_user["kim"]["avg_score"] == 70.0
    assert by_user["kim"]["last_interaction"] == NOON + timedelta(hours=1)
    assert by_user["max"]["lessons_completed"] == 0
    assert by_user["max"]["last_interaction"] is None
    assert summary["manager_stats"]["total_lessons"] == 3
    assert set(summary["manager_stats"]["avg_scores"]) == set(TRAIT_IDS)


def test_team_activity_without_lessons(temp_db):
    summary = team_activity([])
    assert summary == {"team_activity": [], "manager_stats": {"total_lessons": 0, "avg_scores": None}}


def test_concurrent_completions_keep_every_award(make_user, engine, monkeypatch):
    make_user("rae", xp=0)
    read_stats = db.get_rolling_stats

    def slow_read(user_id, con=None):
        stats = read_stats(user_id, con)
        time.sleep(0.05)
        return stats

    monkeypatch.setattr(db, "get_rolling_stats", slow_read)
    errors = []

    def complete(lesson_id):
        try:
            engine.complete_lesson("rae", lesson_id, 40, ratings={"empathy": 90}, now=NOON)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=complete, args=(f"lesson-{i}",)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert db.get_user("rae")["xp"] == 80
    assert db.count_lesson_logs("rae") == 2
    assert db.get_rolling_stats("rae")["empathy"].score == pytest.approx(67.5)
    assert db.list_earned_badge_ids("rae") == ["first-drive"]
