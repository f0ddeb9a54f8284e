"""Shared fixtures: a temporary SQLite ledger, profile factory and polling helpers."""

import asyncio

import pytest

from matchfeed.blocklist import BlockListCache
from matchfeed.database import SQLiteBackend
from matchfeed.models import CandidateProfile, Location

NOW = 1_700_000_000.0
VIEWER = "viewer"


def make_profile(user_id: str, **kwargs) -> CandidateProfile:
    defaults = dict(
        name=f"User {user_id}",
        age=30,
        gender="female",
        interests=["hiking", "coffee"],
        relationship_intent="long_term",
        interested_in=["male"],
        location=Location(40.0, -74.0),
        match_radius_km=50,
        last_active_at=NOW - 600,
    )
    defaults.update(kwargs)
    return CandidateProfile(id=user_id, **defaults)


def fixed_clock() -> float:
    return NOW


async def seed_likes(store, n: int, *, viewer: str = VIEWER, start: int = 0, action: str = "like"):
    """n likers, each a bit further away (so scores fall with i), liking `viewer` at NOW - i."""
    events = []
    for i in range(start, start + n):
        uid = f"u{i:03d}"
        await store.save_profile(make_profile(uid, location=Location(40.0 + i * 0.01, -74.0)))
        events.append(await store.record_interest(uid, viewer, action, created_at=NOW - i))
    return events


async def wait_for(cond, timeout: float = 3.0) -> bool:
    steps = int(timeout / 0.01)
    for _ in range(steps):
        if cond():
            return True
        await asyncio.sleep(0.01)
    return cond()


def init_store(store):
    asyncio.run(store.init(reset=True))
    asyncio.run(store.save_profile(make_profile(VIEWER, gender="male", interested_in=["female"])))
    return store


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "matchfeed.sqlite3")


@pytest.fixture
def store(db_path) -> SQLiteBackend:
    return init_store(SQLiteBackend(db_path))


@pytest.fixture
def blocklist(store) -> BlockListCache:
    return BlockListCache(store)
