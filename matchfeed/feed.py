"""
matchfeed/feed.py — "Who liked you" feed for one viewer.

Pages through unconsumed likes addressed to the viewer (newest first), joins each to
its profile, scores it and keeps the result sorted by match score. Two producers write
into the same FeedState: pagination (load/refill) and the live reconciler (ingest/forget).
Ordering between them:
  * only one fetch runs at a time (`state.loading`)
  * the reconciler waits on `wait_ready()`, which opens only after the first page landed
  * an event id is claimed before its profile join and stays in `seen_event_ids` afterwards,
    so no id is joined twice whichever producer gets there first
  * total_count is re-read from the ledger on every change, minus optimistic removals
    whose commit has not settled
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, FrozenSet, List, Optional

from . import config
from .blocklist import BlockListCache
from .errors import TransientFetchFailure, Unauthenticated
from .filters import FilterSpec, apply_filters, available_occupations
from .geo import distance_km
from .models import CandidateProfile, FeedState, InterestEvent, Liker
from .scoring import DEFAULT_WEIGHTS, ScoreWeights, match_score, profile_completeness

log = logging.getLogger("feed")


def _by_score(liker: Liker) -> int:
    return -liker.match_score


class OptimisticRemoval:
    """Removes one entry right away and can put it back if the commit behind it fails."""

    def __init__(self, feed: "LikerFeed", event_id: str):
        self.feed = feed
        self.event_id = event_id
        self.applied = False
        self._state: Optional[FeedState] = None
        self._entry: Optional[Liker] = None
        self._index = 0

    def apply(self) -> "OptimisticRemoval":
        state = self.feed.state
        idx = self.feed.index_of(self.event_id)
        if idx is None:
            return self
        self._state = state
        self._index = idx
        self._entry = state.entries.pop(idx)
        state.total_count = max(0, state.total_count - 1)
        self.feed._hold(self.event_id)
        self.applied = True
        return self

    def commit(self) -> None:
        """The ledger now agrees with the local removal."""
        self.feed._release(self.event_id)

    def rollback(self) -> None:
        feed = self.feed
        if not self.applied or feed.closed or self._state is not feed.state:
            return
        self.applied = False
        feed._release(self.event_id)
        if feed.index_of(self.event_id) is not None:
            return
        entries = self._state.entries
        i = min(self._index, len(entries))
        fits = (i == 0 or entries[i - 1].match_score >= self._entry.match_score) and \
               (i == len(entries) or entries[i].match_score <= self._entry.match_score)
        if fits:
            entries.insert(i, self._entry)
        else:
            feed._insert_sorted(self._entry)
        self._state.total_count += 1


class LikerFeed:
    def __init__(self, store, blocklist: BlockListCache, viewer_id: Optional[str] = None, *,
                 page_size: int = config.FEED_PAGE_SIZE, weights: ScoreWeights = DEFAULT_WEIGHTS,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.blocklist = blocklist
        self.viewer_id = viewer_id
        self.page_size = page_size
        self.weights = weights
        self.clock = clock
        self.viewer: Optional[CandidateProfile] = None
        self.state = FeedState()
        self.closed = False
        self._claimed: set[str] = set()
        # optimistically removed, commit not settled yet; left out of the ledger count
        self._settled: set[str] = set()
        # bumped on every local count change that has no ledger read behind it
        self._version = 0
        self._ready = asyncio.Event()

    # --- public API ---
    @property
    def entries(self) -> List[Liker]:
        return list(self.state.entries)

    def view(self, filters: Optional[FilterSpec] = None) -> List[Liker]:
        return apply_filters(self.state.entries, filters)

    def occupations(self) -> List[str]:
        return available_occupations(self.state.entries)

    def index_of(self, event_id: str) -> Optional[int]:
        for i, liker in enumerate(self.state.entries):
            if liker.event_id == event_id:
                return i
        return None

    async def load(self, viewer_id: Optional[str] = None) -> FeedState:
        """Fetch the first page from scratch for `viewer_id` (or the current viewer)."""
        if viewer_id is not None and viewer_id != self.viewer_id:
            self.viewer_id = viewer_id
        if not self.viewer_id:
            raise Unauthenticated()
        self._reset()
        await self._fetch(refill=False)
        return self.state

    async def refill(self) -> FeedState:
        """Append the next page. No-op when nothing is left or a fetch is running."""
        if not self.viewer_id:
            raise Unauthenticated()
        if not self.state.has_more or self.state.loading or self.closed:
            return self.state
        await self._fetch(refill=True)
        return self.state

    async def refetch(self) -> FeedState:
        """Drop cursor and dedup state and load again, e.g. after the viewer's filters or profile changed."""
        self.viewer = None
        return await self.load()

    async def mark_consumed(self, event_id: str) -> bool:
        """Flag the event as acted on in the ledger and drop it from the feed."""
        if not self.viewer_id:
            raise Unauthenticated()
        flipped = await self.store.mark_consumed(event_id, self.viewer_id)
        if flipped:
            await self._drop_local(event_id)
        return flipped

    def hide_user(self, user_id: str) -> int:
        """Drop every entry from `user_id` (just blocked). total_count is a ledger figure and stays."""
        state = self.state
        before = len(state.entries)
        state.entries = [l for l in state.entries if l.id != user_id]
        return before - len(state.entries)

    def remove_optimistically(self, event_id: str) -> OptimisticRemoval:
        return OptimisticRemoval(self, event_id).apply()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def close(self) -> None:
        self.closed = True
        # release anyone parked on the gate; they check `closed` next
        self._ready.set()

    # --- live updates (called by the reconciler) ---
    async def ingest(self, event: InterestEvent) -> bool:
        """Join and insert one new like at its score position. False if skipped."""
        if self.closed or event.consumed:
            return False
        state = self.state
        if event.from_user_id in await self._blocked_ids():
            return False
        viewer = self.viewer or CandidateProfile(id=self.viewer_id or "")
        liker = await self._join(event, viewer, state)
        if liker is None or self.closed or state is not self.state:
            return False
        self._insert_sorted(liker)
        await self._refresh_count(state, delta=1)
        return True

    async def forget(self, event_id: str) -> bool:
        """Strip an event that left the feed's query (it got consumed)."""
        if self.closed:
            return False
        delta = -1
        if event_id in self._settled:
            # already subtracted locally when it was removed optimistically
            delta = 0
            self._release(event_id)
        await self._drop_local(event_id, delta)
        return True

    # --- internals ---
    def _reset(self) -> None:
        self.state = FeedState()
        self._claimed = set()
        self._settled = set()
        self._ready.clear()

    def _hold(self, event_id: str) -> None:
        self._settled.add(event_id)
        self._version += 1

    def _release(self, event_id: str) -> None:
        self._settled.discard(event_id)
        self._version += 1

    async def _drop_local(self, event_id: str, delta: int = -1) -> None:
        state = self.state
        idx = self.index_of(event_id)
        if idx is not None:
            state.entries.pop(idx)
        await self._refresh_count(state, delta)

    def _insert_sorted(self, liker: Liker) -> None:
        entries = self.state.entries
        pos = len(entries)
        for i, other in enumerate(entries):
            if other.match_score <= liker.match_score:
                pos = i
                break
        entries.insert(pos, liker)

    async def _viewer_profile(self) -> CandidateProfile:
        # never cached across fetches: scoring depends on it
        try:
            profile = await self.store.get_profile(self.viewer_id)
        except Exception:
            log.warning("viewer profile fetch failed for %s", self.viewer_id, exc_info=True)
            profile = None
        if profile is None:
            log.info("no profile for viewer %s, scoring with defaults", self.viewer_id)
            profile = CandidateProfile(id=self.viewer_id)
        self.viewer = profile
        return profile

    async def _blocked_ids(self) -> FrozenSet[str]:
        try:
            return await self.blocklist.get_blocked_ids(self.viewer_id)
        except TransientFetchFailure:
            # fail open: a broken block list must not hide the whole feed
            log.warning("block list unavailable for %s, showing unfiltered", self.viewer_id, exc_info=True)
            return frozenset()

    async def _join(self, event: InterestEvent, viewer: CandidateProfile, state: FeedState) -> Optional[Liker]:
        if event.id in state.seen_event_ids or event.id in self._claimed:
            return None
        self._claimed.add(event.id)
        try:
            profile = await self.store.get_profile(event.from_user_id)
        except Exception:
            log.warning("profile join failed for %s (event %s)", event.from_user_id, event.id, exc_info=True)
            return None
        finally:
            self._claimed.discard(event.id)
        if profile is None:
            return None
        dist = distance_km(viewer.location, profile.location)
        score = match_score(viewer, profile, dist, now=self.clock(), weights=self.weights)
        state.seen_event_ids.add(event.id)
        return Liker.build(event, profile, match_score=score, distance_km=dist,
                           completeness=profile_completeness(profile))

    async def _fetch(self, refill: bool) -> None:
        state = self.state
        state.loading = True
        state.error = None
        try:
            viewer = await self._viewer_profile()
            blocked = await self._blocked_ids()
            try:
                rows = await self.store.fetch_likes_page(
                    self.viewer_id, limit=self.page_size, cursor=state.cursor if refill else None)
            except Exception:
                log.exception("likes query failed for %s", self.viewer_id)
                state.error = "Failed to fetch likers"
                return
            if state is not self.state or self.closed:
                return
            if not rows:
                state.has_more = False
                if not refill:
                    state.entries = []
                    state.total_count = 0
                return

            state.cursor = (rows[-1].created_at, rows[-1].id)
            joined = await asyncio.gather(*(
                self._join(ev, viewer, state) for ev in rows if ev.from_user_id not in blocked
            ))
            if state is not self.state or self.closed:
                return
            fresh = [l for l in joined if l is not None]
            state.entries = sorted(state.entries + fresh, key=_by_score)
            state.has_more = len(rows) == self.page_size
            await self._refresh_count(state)
            log.info("feed %s for %s: +%d entries (%d shown, has_more=%s)",
                     "refill" if refill else "load", self.viewer_id, len(fresh),
                     len(state.entries), state.has_more)
        finally:
            state.loading = False
            if state is self.state:
                self._ready.set()

    async def _refresh_count(self, state: FeedState, delta: int = 0) -> None:
        """
        Re-read the pending total from the ledger. `delta` is applied to the local count
        instead when the read fails, or when an optimistic removal or rollback landed while
        it was in flight (the read would overwrite that change).
        """
        version = self._version
        try:
            pending = await self.store.count_pending_likes(self.viewer_id, exclude=sorted(self._settled))
        except Exception:
            log.warning("likes count failed for %s", self.viewer_id, exc_info=True)
            pending = None
        if state is not self.state:
            return
        if pending is None or version != self._version:
            state.total_count = max(len(state.entries), state.total_count + delta)
        else:
            state.total_count = pending
