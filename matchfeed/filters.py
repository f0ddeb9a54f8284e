# matchfeed/filters.py
# Post-filters over the ranked likes feed: every present clause is AND-ed, absent clauses pass.

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from .models import Liker

Filter = Callable[[Liker], bool]


@dataclass(frozen=True)
class Range:
    min: float
    max: float

    def __contains__(self, value: float) -> bool:
        return self.min <= value <= self.max

    @classmethod
    def parse(cls, data: Any) -> Optional["Range"]:
        if data is None:
            return None
        if isinstance(data, Range):
            return data
        if isinstance(data, dict):
            return cls(float(data["min"]), float(data["max"]))
        lo, hi = data
        return cls(float(lo), float(hi))


@dataclass(frozen=True)
class FilterSpec:
    age_range: Optional[Range] = None
    height_range: Optional[Range] = None
    relationship_intents: Optional[frozenset] = None
    max_distance_km: Optional[float] = None
    occupations: Optional[frozenset] = None
    trust_range: Optional[Range] = None
    match_score_range: Optional[Range] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterSpec":
        def _set(v):
            return frozenset(v) if v else None
        max_dist = data.get("max_distance_km")
        return cls(
            age_range=Range.parse(data.get("age_range")),
            height_range=Range.parse(data.get("height_range")),
            relationship_intents=_set(data.get("relationship_intents")),
            max_distance_km=float(max_dist) if max_dist is not None else None,
            occupations=_set(data.get("occupations")),
            trust_range=Range.parse(data.get("trust_range")),
            match_score_range=Range.parse(data.get("match_score_range")),
        )


def range_filter(attr: str, rng: Range) -> Filter:
    # a candidate without the value is not excluded by a range clause
    def _f(liker: Liker) -> bool:
        value = getattr(liker, attr)
        return value is None or value in rng
    return _f


def membership_filter(attr: str, allowed: frozenset) -> Filter:
    def _f(liker: Liker) -> bool:
        value = getattr(liker, attr)
        return bool(value) and value in allowed
    return _f


def max_distance_filter(max_km: float) -> Filter:
    def _f(liker: Liker) -> bool:
        return liker.distance_km is None or liker.distance_km <= max_km
    return _f


def build_filters(spec: Optional[FilterSpec]) -> List[Filter]:
    if spec is None:
        return []
    filters: List[Filter] = []
    if spec.age_range is not None:
        filters.append(range_filter("age", spec.age_range))
    if spec.height_range is not None:
        filters.append(range_filter("height", spec.height_range))
    if spec.relationship_intents:
        filters.append(membership_filter("relationship_intent", spec.relationship_intents))
    if spec.max_distance_km is not None:
        filters.append(max_distance_filter(spec.max_distance_km))
    if spec.occupations:
        filters.append(membership_filter("occupation", spec.occupations))
    if spec.trust_range is not None:
        filters.append(range_filter("completeness", spec.trust_range))
    if spec.match_score_range is not None:
        filters.append(range_filter("match_score", spec.match_score_range))
    return filters


def passes(liker: Liker, spec: Optional[FilterSpec]) -> bool:
    return all(f(liker) for f in build_filters(spec))


def apply_filters(likers: Iterable[Liker], spec: Optional[FilterSpec]) -> List[Liker]:
    filters = build_filters(spec)
    return [l for l in likers if all(f(l) for f in filters)]


def available_occupations(likers: Iterable[Liker]) -> List[str]:
    return sorted({l.occupation for l in likers if l.occupation})
