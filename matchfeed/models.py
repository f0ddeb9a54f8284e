"""Data models for the likes feed.

Plain dataclasses with an explicit default for every optional profile field, so
loosely-shaped profile documents never surface as errors further down.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Optional

LIKE = "like"
PASS = "pass"
SUPERLIKE = "superlike"
ACTIONS = (LIKE, PASS, SUPERLIKE)
# actions that put a candidate into the recipient's likes feed
FEED_ACTIONS = (LIKE, SUPERLIKE)

# per-event state from the recipient's point of view
MATCHED = "matched"
PASSED = "passed"


def new_id() -> str:
    return uuid.uuid4().hex


def pair_key(a: str, b: str) -> str:
    """Order-independent key for an unordered pair of users."""
    lo, hi = sorted((a, b))
    return f"{lo}:{hi}"


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    city: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude, "city": self.city}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["Location"]:
        if not data:
            return None
        lat, lon = data.get("latitude"), data.get("longitude")
        if lat is None or lon is None:
            return None
        return cls(latitude=float(lat), longitude=float(lon), city=data.get("city"))


def _height_cm(value: Any) -> Optional[float]:
    # accepts 180, 180.5 or {"value": 180}
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class CandidateProfile:
    """A user profile as read from the profile store. Read-only to this package."""
    id: str
    name: str = "Unknown"
    age: Optional[int] = None
    gender: str = ""
    bio: str = ""
    interests: list[str] = dataclass_field(default_factory=list)
    relationship_intent: Optional[str] = None
    interested_in: list[str] = dataclass_field(default_factory=list)
    photos: list[Any] = dataclass_field(default_factory=list)
    location: Optional[Location] = None
    is_verified: bool = False
    match_radius_km: Optional[float] = None
    occupation: Optional[str] = None
    height: Optional[float] = None
    last_active_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "bio": self.bio,
            "interests": list(self.interests),
            "relationship_intent": self.relationship_intent,
            "interested_in": list(self.interested_in),
            "photos": list(self.photos),
            "location": self.location.to_dict() if self.location else None,
            "is_verified": self.is_verified,
            "match_radius_km": self.match_radius_km,
            "occupation": self.occupation,
            "height": self.height,
            "last_active_at": self.last_active_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], user_id: Optional[str] = None) -> "CandidateProfile":
        age = data.get("age")
        radius = data.get("match_radius_km")
        last_active = data.get("last_active_at")
        return cls(
            id=str(user_id or data.get("id") or ""),
            name=data.get("name") or "Unknown",
            age=int(age) if age not in (None, "") else None,
            gender=data.get("gender") or "",
            bio=data.get("bio") or "",
            interests=list(data.get("interests") or []),
            relationship_intent=data.get("relationship_intent") or None,
            interested_in=list(data.get("interested_in") or []),
            photos=list(data.get("photos") or []),
            location=Location.from_dict(data.get("location")),
            is_verified=bool(data.get("is_verified", False)),
            match_radius_km=float(radius) if radius else None,
            occupation=data.get("occupation") or None,
            height=_height_cm(data.get("height")),
            last_active_at=float(last_active) if last_active is not None else None,
        )


@dataclass
class InterestEvent:
    """One directional swipe. Only `consumed` ever changes, and only false -> true."""
    from_user_id: str
    to_user_id: str
    action: str
    consumed: bool = False
    created_at: float = dataclass_field(default_factory=time.time)
    id: str = dataclass_field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "action": self.action,
            "consumed": self.consumed,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InterestEvent":
        return cls(
            id=data["id"],
            from_user_id=data["from_user_id"],
            to_user_id=data["to_user_id"],
            action=data["action"],
            consumed=bool(data.get("consumed", False)),
            created_at=float(data["created_at"]),
        )


@dataclass
class Liker:
    """A ranked candidate with an unconsumed like directed at the viewer."""
    id: str
    event_id: str
    name: str
    age: Optional[int]
    gender: str
    bio: str
    interests: list[str]
    relationship_intent: Optional[str]
    interested_in: list[str]
    photos: list[Any]
    location: Optional[Location]
    is_verified: bool
    occupation: Optional[str]
    height: Optional[float]
    last_active_at: Optional[float]
    match_score: int
    distance_km: Optional[float]
    completeness: int
    liked_at: float

    @classmethod
    def build(cls, event: InterestEvent, profile: CandidateProfile, *, match_score: int,
              distance_km: Optional[float], completeness: int) -> "Liker":
        return cls(
            id=profile.id,
            event_id=event.id,
            name=profile.name,
            age=profile.age,
            gender=profile.gender,
            bio=profile.bio,
            interests=list(profile.interests),
            relationship_intent=profile.relationship_intent,
            interested_in=list(profile.interested_in),
            photos=list(profile.photos),
            location=profile.location,
            is_verified=profile.is_verified,
            occupation=profile.occupation,
            height=profile.height,
            last_active_at=profile.last_active_at,
            match_score=match_score,
            distance_km=distance_km,
            completeness=completeness,
            liked_at=event.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "bio": self.bio,
            "interests": self.interests,
            "relationship_intent": self.relationship_intent,
            "interested_in": self.interested_in,
            "photos": self.photos,
            "location": self.location.to_dict() if self.location else None,
            "is_verified": self.is_verified,
            "occupation": self.occupation,
            "height": self.height,
            "last_active_at": self.last_active_at,
            "match_score": self.match_score,
            "distance_km": round(self.distance_km, 1) if self.distance_km is not None else None,
            "completeness": self.completeness,
            "liked_at": self.liked_at,
        }


@dataclass
class MatchRecord:
    user_a: str
    user_b: str
    is_active: bool = True
    created_at: float = dataclass_field(default_factory=time.time)
    id: str = dataclass_field(default_factory=new_id)

    @property
    def pair_key(self) -> str:
        return pair_key(self.user_a, self.user_b)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_a": self.user_a,
            "user_b": self.user_b,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


@dataclass
class ChannelRecord:
    user_a: str
    user_b: str
    related_match_id: str
    is_mutual: bool = True
    last_message: Optional[str] = None
    created_at: float = dataclass_field(default_factory=time.time)
    id: str = dataclass_field(default_factory=new_id)
    type: str = "dating"
    deletion_policy: str = "on_unmatch"

    @property
    def participants(self) -> list[str]:
        return [self.user_a, self.user_b]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "participants": self.participants,
            "related_match_id": self.related_match_id,
            "is_mutual": self.is_mutual,
            "last_message": self.last_message,
            "deletion_policy": self.deletion_policy,
            "created_at": self.created_at,
        }


@dataclass
class FeedState:
    """In-memory feed of one viewer session."""
    entries: list[Liker] = dataclass_field(default_factory=list)
    seen_event_ids: set[str] = dataclass_field(default_factory=set)
    cursor: Optional[tuple[float, str]] = None
    has_more: bool = False
    total_count: int = 0
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class LedgerChange:
    """`added`: an unconsumed like/superlike was recorded. `removed`: an event got consumed."""
    kind: str
    event: InterestEvent


@dataclass(frozen=True)
class MatchCreated:
    match: MatchRecord
    channel: ChannelRecord


@dataclass
class SwipeOutcome:
    event_id: str
    state: str
    match: Optional[MatchRecord] = None
    channel: Optional[ChannelRecord] = None
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "state": self.state,
            "match_id": self.match.id if self.match else None,
            "channel_id": self.channel.id if self.channel else None,
            "duplicate": self.duplicate,
        }
