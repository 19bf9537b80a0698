# app.py — CX scoring service
# - Lesson completion: moderation, XP, rolling stats and badges in one call
# - Derived level/progress lookups for dashboards
# - Stateless behavior assessment for previews

import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query

import db
from engines.lesson_completion import (
    LessonCompletionEngine,
    daily_lesson_limits,
    team_activity,
    user_stats,
)
from engines.moderation import assess_behavior_violation
from engines.rolling_stats import RollingStatsEngine
from engines.validation import LessonCompletionValidationError, UserNotFoundError
from engines.xp import calculate_level
from env_validation import get_env_bool, get_rolling_alpha, validate_environment
from schemas import (
    AssessmentBody,
    AssessmentOut,
    DailyLimitsOut,
    LessonCompletionBody,
    LevelOut,
    TeamActivityBody,
    UserBody,
    dump_ratings,
)

logger = logging.getLogger(__name__)

APP_VERSION = "1.2.0"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        level_name = os.getenv("CX_LOG_LEVEL")
        if level_name:
            logging.getLogger().setLevel(level_name.upper())
        db.init()
        _completion_engine.cache_clear()
        engine = _completion_engine()
        logger.info(
            "CX scoring service ready (db=%s, alpha=%s, moderation=%s)",
            db.DB_PATH,
            engine.stats_engine.alpha,
            engine.moderation_enabled,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="CX Scoring Service", version=APP_VERSION, lifespan=_lifespan)


@lru_cache(maxsize=1)
def _completion_engine() -> LessonCompletionEngine:
    return LessonCompletionEngine(
        stats_engine=RollingStatsEngine(alpha=get_rolling_alpha()),
        moderation_enabled=get_env_bool("CX_MODERATION_ENABLED", True),
    )


def _require_user(user_id: str) -> Dict[str, Any]:
    user = db.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"user {user_id} not found")
    return user


@app.get("/")
def root():
    return {"service": "cx-scoring", "version": APP_VERSION}


@app.post("/users")
def register_user(body: UserBody):
    user = db.upsert_user(
        body.user_id,
        name=body.name,
        role=body.role,
        dealership_ids=body.dealership_ids,
        xp=body.xp,
    )
    user["level"] = calculate_level(user["xp"]).as_dict()
    return user


@app.get("/level", response_model=LevelOut)
def level_for_xp(xp: float = Query(0)):
    return calculate_level(xp).as_dict()


@app.get("/users/{user_id}/level", response_model=LevelOut)
def user_level(user_id: str):
    user = _require_user(user_id)
    return calculate_level(user["xp"]).as_dict()


@app.get("/users/{user_id}/stats")
def get_user_stats(user_id: str):
    try:
        stats = user_stats(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return dump_ratings(
        {trait_id: {"score": stat.score, "last_updated": stat.last_updated} for trait_id, stat in stats.items()}
    )


@app.get("/users/{user_id}/daily-limits", response_model=DailyLimitsOut)
def get_daily_limits(user_id: str):
    _require_user(user_id)
    return daily_lesson_limits(user_id)


@app.post("/moderation/assess", response_model=AssessmentOut)
def assess(body: AssessmentBody):
    ratings = body.ratings.as_mapping() if body.ratings else None
    result = assess_behavior_violation(body.user_messages, ratings, body.xp_awarded)
    payload = result.as_dict()
    if "adjusted_ratings" in payload:
        payload["adjusted_ratings"] = dump_ratings(payload["adjusted_ratings"])
    return payload


@app.post("/lessons/complete")
def complete_lesson(body: LessonCompletionBody):
    engine = _completion_engine()
    try:
        result = engine.complete_lesson(
            body.user_id,
            body.lesson_id,
            body.xp_gained,
            ratings=body.ratings.as_mapping() if body.ratings else None,
            user_messages=body.user_messages,
            is_recommended=body.is_recommended,
            severity=body.severity,
            flags=body.flags,
            trained_trait=body.trained_trait,
            coach_summary=body.coach_summary,
            recommended_next_focus=body.recommended_next_focus,
        )
    except LessonCompletionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    payload = result.as_dict()
    payload["ratings_used"] = dump_ratings(payload["ratings_used"])
    payload["stat_changes"] = dump_ratings(payload["stat_changes"])
    if "assessment" in payload and payload["assessment"].get("adjusted_ratings") is not None:
        payload["assessment"]["adjusted_ratings"] = dump_ratings(payload["assessment"]["adjusted_ratings"])
    return payload


@app.post("/team/activity")
def get_team_activity(body: Optional[TeamActivityBody] = None):
    user_ids = body.user_ids if body else None
    summary = team_activity(user_ids)
    avg_scores = summary["manager_stats"]["avg_scores"]
    summary["manager_stats"]["avg_scores"] = dump_ratings(avg_scores)
    return summary
