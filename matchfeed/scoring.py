"""
matchfeed/scoring.py — compatibility score and profile completeness.

Score = proximity + intent + shared interests + recency, each scaled by its weight
and the total clamped to [0, 100]. A side with no data for a component gets a reduced
share of it instead of nothing, so brand-new profiles are not starved of visibility.
Pure functions: the current time is an explicit argument.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import config
from .models import CandidateProfile

UNSURE = "unsure"


@dataclass(frozen=True)
class ScoreWeights:
    proximity: float = config.SCORE_W_PROXIMITY
    intent: float = config.SCORE_W_INTENT
    interests: float = config.SCORE_W_INTERESTS
    recency: float = config.SCORE_W_RECENCY
    unknown_factor: float = config.SCORE_UNKNOWN_FACTOR
    intent_partial: float = config.SCORE_INTENT_PARTIAL
    default_radius_km: float = config.DEFAULT_MATCH_RADIUS_KM


DEFAULT_WEIGHTS = ScoreWeights()


def proximity_component(distance_km: Optional[float], viewer_radius_km: Optional[float],
                        candidate_radius_km: Optional[float], w: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    """Closer is better, measured against the stricter of both radii; zero outside either radius."""
    if distance_km is None:
        return w.proximity * w.unknown_factor
    radius = min(viewer_radius_km or w.default_radius_km, candidate_radius_km or w.default_radius_km)
    if radius <= 0 or distance_km > radius:
        return 0.0
    return w.proximity * (1 - distance_km / radius)


def intent_component(viewer_intent: Optional[str], candidate_intent: Optional[str],
                     w: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    if not viewer_intent or not candidate_intent:
        return w.intent * w.intent_partial
    if viewer_intent == candidate_intent:
        return w.intent
    if UNSURE in (viewer_intent, candidate_intent):
        return w.intent * w.intent_partial
    return 0.0


def interests_component(viewer_interests, candidate_interests, w: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    """Jaccard overlap of the two interest sets (case-insensitive)."""
    a = {str(x).strip().lower() for x in viewer_interests or [] if str(x).strip()}
    b = {str(x).strip().lower() for x in candidate_interests or [] if str(x).strip()}
    if not a or not b:
        return w.interests * w.unknown_factor
    return w.interests * len(a & b) / len(a | b)


def recency_component(last_active_at: Optional[float], now: float, w: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    if last_active_at is None:
        return w.recency * w.unknown_factor
    hours = max(0.0, (now - last_active_at) / 3600)
    if hours < 1:
        return w.recency
    if hours < 24:
        return w.recency * 0.6
    if hours < 72:
        return w.recency * 0.3
    return 0.0


def match_score(viewer: CandidateProfile, candidate: CandidateProfile, distance_km: Optional[float],
                *, now: float, weights: ScoreWeights = DEFAULT_WEIGHTS) -> int:
    """Compatibility of `candidate` for `viewer`, an int in [0, 100]."""
    total = (
        proximity_component(distance_km, viewer.match_radius_km, candidate.match_radius_km, weights)
        + intent_component(viewer.relationship_intent, candidate.relationship_intent, weights)
        + interests_component(viewer.interests, candidate.interests, weights)
        + recency_component(candidate.last_active_at, now, weights)
    )
    return int(min(100, max(0, round(total))))


def profile_completeness(profile: CandidateProfile) -> int:
    """Trust score 0-100 from which profile sections are filled in."""
    score = 0
    if profile.name and profile.name != "Unknown" and profile.age and profile.gender and len(profile.photos) >= 4:
        score += 30
    if len(profile.bio.strip()) >= 20:
        score += 10
    if profile.interests:
        score += 15
    if profile.relationship_intent:
        score += 10
    if profile.interested_in:
        score += 10
    if profile.location is not None:
        score += 25
    return score
