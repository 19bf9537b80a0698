"""Rolling CX trait statistics.

Each user carries one long-running score per CX trait. After every lesson the
(possibly moderation-adjusted) ratings are blended into those scores with an
exponential moving average so a single attempt nudges a trait instead of
replacing it.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from traits import TRAITS, TRAIT_IDS

_LOGGER = logging.getLogger(__name__)

Ratings = Dict[str, float]

MIN_SCORE = 0.0
MAX_SCORE = 100.0
DEFAULT_RATING = 0.0
BASELINE = 50.0
DEFAULT_ALPHA = 0.25


def _clamp(value: float, low: float = MIN_SCORE, high: float = MAX_SCORE) -> float:
    return max(low, min(high, value))


def _as_finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def normalize_trait_keys(ratings: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return ``ratings`` keyed by canonical trait id, dropping unknown keys.

    Wire names such as ``followUp`` or the legacy ``relationshipBuilding``
    resolve to their canonical ids. A canonical key wins over an alias when
    both are present.
    """

    if not ratings:
        return {}
    normalized: Dict[str, Any] = {}
    for key, value in ratings.items():
        trait_id = TRAITS.resolve(str(key))
        if trait_id is None:
            continue
        if trait_id in normalized and key != trait_id:
            continue
        normalized[trait_id] = value
    return normalized


def clamp_ratings(partial: Optional[Mapping[str, Any]]) -> Ratings:
    """Return a complete ratings dict with every value inside [0, 100].

    Missing or non-numeric traits fall back to ``DEFAULT_RATING``. Applying the
    function to its own output returns an equal dict.
    """

    source = normalize_trait_keys(partial)
    clamped: Ratings = {}
    for trait_id in TRAIT_IDS:
        value = _as_finite(source.get(trait_id))
        clamped[trait_id] = DEFAULT_RATING if value is None else _clamp(value)
    return clamped


def supplied_ratings(partial: Optional[Mapping[str, Any]]) -> Ratings:
    """Return only the traits that carry a usable number, clamped to [0, 100]."""

    source = normalize_trait_keys(partial)
    result: Ratings = {}
    for trait_id in TRAIT_IDS:
        value = _as_finite(source.get(trait_id))
        if value is not None:
            result[trait_id] = _clamp(value)
    return result


@dataclass(frozen=True)
class RollingStat:
    """Persisted proficiency for one trait of one user."""

    score: float
    last_updated: datetime

    def __post_init__(self) -> None:
        score = _as_finite(self.score)
        object.__setattr__(self, "score", BASELINE if score is None else _clamp(score))


@dataclass
class RollingStatsUpdate:
    """Outcome of blending one lesson's ratings into a user's stats."""

    before: Dict[str, float]
    after: Dict[str, float]
    stats: Dict[str, RollingStat]
    updated_traits: list[str] = field(default_factory=list)

    def deltas(self) -> Dict[str, float]:
        return {trait_id: self.after[trait_id] - self.before[trait_id] for trait_id in self.after}


def default_stats(now: Optional[datetime] = None) -> Dict[str, RollingStat]:
    """Return baseline stats for a user that has none yet."""

    timestamp = now or datetime.now(timezone.utc)
    return {trait_id: RollingStat(BASELINE, timestamp) for trait_id in TRAIT_IDS}


class RollingStatsEngine:
    """Exponential moving average over per-trait lesson ratings.

    Parameters
    ----------
    alpha:
        Weight of the newest rating, in ``(0, 1]``. ``1.0`` replaces the
        stored score with the latest rating.
    """

    def __init__(self, alpha: float = DEFAULT_ALPHA) -> None:
        alpha = float(alpha)
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        self.alpha = alpha

    def blend(self, prior: float, rating: float) -> float:
        return _clamp(prior * (1.0 - self.alpha) + rating * self.alpha)

    def update(
        self,
        prior: Optional[Mapping[str, Optional[RollingStat]]],
        ratings: Optional[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> RollingStatsUpdate:
        """Blend ``ratings`` into ``prior`` and return the new stats.

        Traits without a supplied rating keep their score and timestamp.
        Traits without a prior stat start from ``BASELINE``.
        """

        timestamp = now or datetime.now(timezone.utc)
        incoming = supplied_ratings(ratings)
        prior = prior or {}

        before: Dict[str, float] = {}
        after: Dict[str, float] = {}
        stats: Dict[str, RollingStat] = {}
        updated: list[str] = []

        for trait_id in TRAIT_IDS:
            existing = prior.get(trait_id)
            if existing is None:
                existing = RollingStat(BASELINE, timestamp)
            before[trait_id] = existing.score

            rating = incoming.get(trait_id)
            if rating is None:
                stats[trait_id] = existing
                after[trait_id] = existing.score
                continue

            new_score = self.blend(existing.score, rating)
            stats[trait_id] = RollingStat(new_score, timestamp)
            after[trait_id] = new_score
            updated.append(trait_id)

        if len(updated) < len(TRAIT_IDS):
            skipped = [trait_id for trait_id in TRAIT_IDS if trait_id not in updated]
            _LOGGER.debug("Rolling stats left unchanged for traits without ratings: %s", skipped)

        return RollingStatsUpdate(before=before, after=after, stats=stats, updated_traits=updated)
