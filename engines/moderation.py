"""Behavior violation assessment for lesson transcripts.

The learner's chat turns are scanned for profanity, harassment, contempt for
the lesson and threats. Category hit counts feed a weighted score; a
violation marks the ratings down and turns the XP award into a penalty.

Text matching is delegated to a :class:`TextClassifier` so the regex lists
can be replaced (keyword lists, an ML model) without touching the scoring.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Pattern, Protocol, Sequence

from engines.rolling_stats import Ratings, clamp_ratings
from engines.xp import SEVERITY_NORMAL, SEVERITY_VIOLATION, round_half_up

_LOGGER = logging.getLogger(__name__)

PROFANITY = "profanity"
HARASSMENT = "harassment"
LESSON_CONTEMPT = "lesson_contempt"
THREAT = "threat"

CATEGORY_FLAGS: Dict[str, str] = {
    PROFANITY: "profanity",
    HARASSMENT: "harassment",
    LESSON_CONTEMPT: "lesson_disrespect",
    THREAT: "threatening_language",
}

CATEGORY_WEIGHTS: Dict[str, float] = {
    PROFANITY: 0.12,
    HARASSMENT: 0.30,
    LESSON_CONTEMPT: 0.25,
    THREAT: 0.75,
}

VIOLATION_THRESHOLD = 0.35
REPETITION_BONUS = ((4, 0.20), (2, 0.10))

MIN_RATING_MARKDOWN = 20.0
RATING_MARKDOWN_RANGE = 50.0
MIN_XP_PENALTY = 10
MAX_XP_PENALTY = 100

_VERBS = r"(?:kill|hurt|hit|beat|attack|slap|punch|shoot|stab)"
_HARM_VERBS = r"(?:kill|hurt|attack|slap|punch|shoot|stab)"
_LESSON = r"(?:lesson|training|course|roleplay|role\s*play|exercise|module|simulation)"
_DISMISSIVE = r"(?:garbage|trash|stupid|useless|pointless|worthless|dumb|crap|bullshit|a\s+joke)"

DEFAULT_PATTERNS: Dict[str, Sequence[str]] = {
    PROFANITY: (
        r"\bfuck(?:ing|ed|er|s)?\b",
        r"\bshit(?:ty|s)?\b",
        r"\bbitch(?:es)?\b",
        r"\basshole\b",
        r"\bdick\b",
        r"\bmotherfucker\b",
    ),
    HARASSMENT: (
        r"\byou(?:'re| are)?\s+(?:an?\s+)?(?:idiot|moron|stupid|dumb|pathetic|useless)\b",
        r"\bshut\s+up\b",
        r"\byou\s+suck\b",
    ),
    LESSON_CONTEMPT: (
        rf"\b(?:this|the|your)\s+{_LESSON}\s+(?:is\s+)?{_DISMISSIVE}",
        rf"\b{_DISMISSIVE}\s+{_LESSON}\b",
        r"\bthis\s+is\s+(?:stupid|pointless|a\s+waste)\b",
        r"\bwaste\s+of\s+(?:my\s+)?time\b",
        rf"\bi\s+don'?t\s+care\s+about\s+(?:this|the|your)\s+{_LESSON}\b",
    ),
    THREAT: (
        rf"\b{_VERBS}\s+(?:you|u|him|her|them)\b",
        rf"\bi(?:'ll|\s+will|\s+am\s+going\s+to|'m\s+going\s+to|\s+gonna)\s+{_HARM_VERBS}\b",
    ),
}


class TextClassifier(Protocol):
    """Counts category hits in a block of text."""

    def classify(self, text: str) -> Dict[str, int]:
        ...


class RegexTextClassifier:
    """Count non-overlapping, case-insensitive regex matches per category."""

    def __init__(self, patterns: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        source = DEFAULT_PATTERNS if patterns is None else patterns
        self._patterns: Dict[str, list[Pattern[str]]] = {
            category: [re.compile(expr, re.IGNORECASE) for expr in expressions]
            for category, expressions in source.items()
        }

    @property
    def categories(self) -> Sequence[str]:
        return tuple(self._patterns)

    def classify(self, text: str) -> Dict[str, int]:
        return {
            category: sum(len(pattern.findall(text)) for pattern in patterns)
            for category, patterns in self._patterns.items()
        }


@dataclass
class BehaviorViolationAssessment:
    violated: bool
    severity: str
    score: float
    flags: list[str] = field(default_factory=list)
    adjusted_xp_awarded: Optional[int] = None
    adjusted_ratings: Optional[Ratings] = None

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.adjusted_xp_awarded is None:
            payload.pop("adjusted_xp_awarded")
        if self.adjusted_ratings is None:
            payload.pop("adjusted_ratings")
        return payload


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _repetition_bonus(total_hits: int) -> float:
    for minimum, bonus in REPETITION_BONUS:
        if total_hits >= minimum:
            return bonus
    return 0.0


class BehaviorViolationAssessor:
    """Score a transcript and derive rating/XP penalties on violation."""

    def __init__(self, classifier: Optional[TextClassifier] = None) -> None:
        self.classifier = classifier or RegexTextClassifier()

    def score(self, hits: Mapping[str, int]) -> float:
        weighted = sum(CATEGORY_WEIGHTS.get(category, 0.0) * count for category, count in hits.items())
        total_hits = sum(hits.values())
        return _clamp(weighted + _repetition_bonus(total_hits), 0.0, 1.0)

    def assess(
        self,
        user_messages: Optional[Sequence[str]],
        ratings: Optional[Mapping[str, Any]] = None,
        xp_awarded: Any = 0,
    ) -> BehaviorViolationAssessment:
        """Assess one lesson attempt.

        ``xp_awarded`` is accepted for parity with the grader output; on
        violation it is replaced by a penalty that depends only on the score.
        """

        combined = "\n".join(str(message) for message in (user_messages or ())).lower()
        if not combined.strip():
            return BehaviorViolationAssessment(violated=False, severity=SEVERITY_NORMAL, score=0.0, flags=[])

        hits = {category: int(count) for category, count in self.classifier.classify(combined).items()}
        flags: list[str] = []
        for category, flag in CATEGORY_FLAGS.items():
            if hits.get(category, 0) > 0 and flag not in flags:
                flags.append(flag)

        score = self.score(hits)
        violated = hits.get(THREAT, 0) > 0 or score >= VIOLATION_THRESHOLD

        if not violated:
            return BehaviorViolationAssessment(
                violated=False, severity=SEVERITY_NORMAL, score=score, flags=flags
            )

        normalized_severity = _clamp((score - VIOLATION_THRESHOLD) / (1.0 - VIOLATION_THRESHOLD), 0.0, 1.0)
        markdown = MIN_RATING_MARKDOWN + normalized_severity * RATING_MARKDOWN_RANGE
        safe_ratings = clamp_ratings(ratings)
        adjusted_ratings = {
            trait_id: max(0.0, value - markdown) for trait_id, value in safe_ratings.items()
        }
        penalty = round_half_up(
            _clamp(MIN_XP_PENALTY + normalized_severity * (MAX_XP_PENALTY - MIN_XP_PENALTY), MIN_XP_PENALTY, MAX_XP_PENALTY)
        )

        _LOGGER.warning(
            "Behavior violation detected (score=%.2f, flags=%s, proposed_xp=%s, penalty=%s)",
            score,
            flags,
            xp_awarded,
            -penalty,
        )
        return BehaviorViolationAssessment(
            violated=True,
            severity=SEVERITY_VIOLATION,
            score=score,
            flags=flags,
            adjusted_xp_awarded=-penalty,
            adjusted_ratings=adjusted_ratings,
        )


_DEFAULT_ASSESSOR = BehaviorViolationAssessor()


def assess_behavior_violation(
    user_messages: Optional[Sequence[str]],
    ratings: Optional[Mapping[str, Any]] = None,
    xp_awarded: Any = 0,
) -> BehaviorViolationAssessment:
    """Assess a transcript with the default regex classifier."""

    return _DEFAULT_ASSESSOR.assess(user_messages, ratings, xp_awarded)
