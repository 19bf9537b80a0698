"""Pydantic schemas for the HTTP surface of the scoring service."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "Ratings",
    "PartialRatings",
    "RollingStatOut",
    "LevelOut",
    "AssessmentBody",
    "AssessmentOut",
    "LessonCompletionBody",
    "UserBody",
    "TeamActivityBody",
    "DailyLimitsOut",
]


class Ratings(BaseModel):
    """One lesson attempt's six CX trait ratings (0-100)."""

    model_config = ConfigDict(populate_by_name=True)

    empathy: float
    listening: float
    trust: float
    follow_up: float = Field(alias="followUp")
    closing: float
    relationship: float


class PartialRatings(BaseModel):
    """Ratings as proposed by the grader; any trait may be missing.

    Values are not range-checked here; the scoring engines clamp them.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    empathy: Optional[float] = None
    listening: Optional[float] = None
    trust: Optional[float] = None
    follow_up: Optional[float] = Field(default=None, alias="followUp")
    closing: Optional[float] = None
    relationship: Optional[float] = None
    # legacy lesson logs used ``relationshipBuilding``
    relationship_building: Optional[float] = Field(default=None, alias="relationshipBuilding")

    def as_mapping(self) -> Dict[str, float]:
        values = self.model_dump(exclude_none=True)
        legacy = values.pop("relationship_building", None)
        if "relationship" not in values and legacy is not None:
            values["relationship"] = legacy
        return values


class RollingStatOut(BaseModel):
    score: float = Field(ge=0, le=100)
    last_updated: datetime


class LevelOut(BaseModel):
    level: int = Field(ge=1, le=100)
    level_xp: float
    next_level_xp: float
    progress: int = Field(ge=0, le=100)
    total_xp_for_next_level: Optional[float] = None


class AssessmentBody(BaseModel):
    user_messages: List[str] = Field(default_factory=list)
    ratings: Optional[PartialRatings] = None
    xp_awarded: float = 0


class AssessmentOut(BaseModel):
    violated: bool
    severity: Literal["normal", "behavior_violation"]
    score: float = Field(ge=0, le=1)
    flags: List[str] = Field(default_factory=list)
    adjusted_xp_awarded: Optional[int] = None
    adjusted_ratings: Optional[Ratings] = None


class LessonCompletionBody(BaseModel):
    user_id: str
    lesson_id: str
    xp_gained: float = 0
    is_recommended: bool = False
    ratings: Optional[PartialRatings] = None
    user_messages: Optional[List[str]] = None
    severity: Optional[Literal["normal", "behavior_violation"]] = None
    flags: Optional[List[str]] = None
    trained_trait: Optional[str] = None
    coach_summary: Optional[str] = None
    recommended_next_focus: Optional[str] = None


class UserBody(BaseModel):
    user_id: str = Field(min_length=1)
    name: str = ""
    role: str = "Sales Consultant"
    dealership_ids: List[str] = Field(default_factory=list)
    xp: Optional[int] = Field(default=None, ge=0)


class TeamActivityBody(BaseModel):
    user_ids: Optional[List[str]] = None


class DailyLimitsOut(BaseModel):
    recommended_taken: bool
    other_taken: bool


def dump_ratings(ratings: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialise an engine ratings dict with wire aliases (``followUp``)."""
    if ratings is None:
        return None
    return {("followUp" if key == "follow_up" else key): value for key, value in ratings.items()}
