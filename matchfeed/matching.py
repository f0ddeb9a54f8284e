"""
matchfeed/matching.py — turns a viewer's reaction to a pending like into ledger records.

like_back(event_id): consume the like, record the reciprocal like, open match + channel.
pass_on(event_id):   consume the like, record a pass.
Both are a single transaction in the backend; the feed entry is removed optimistically
before the commit and restored if it fails. One transaction per viewer session at a time:
a second call while one is running raises TransactionInFlight instead of queueing.
A repeated call for an already consumed event returns an outcome with duplicate=True.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .errors import EventNotFound, TransactionCommitFailure, TransactionInFlight, Unauthenticated
from .feed import LikerFeed
from .models import MATCHED, PASSED, SwipeOutcome

log = logging.getLogger("matching")


class MatchCoordinator:
    def __init__(self, store, feed: LikerFeed):
        self.store = store
        self.feed = feed
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def like_back(self, event_id: str) -> SwipeOutcome:
        async def commit(viewer_id: str) -> SwipeOutcome:
            result = await self.store.commit_like_back(event_id, viewer_id)
            if result is None:
                return SwipeOutcome(event_id, MATCHED, duplicate=True)
            match, channel, created = result
            if created:
                log.info("match %s created for %s <-> %s", match.id, match.user_a, match.user_b)
            return SwipeOutcome(event_id, MATCHED, match=match, channel=channel)
        return await self._run(event_id, commit)

    async def pass_on(self, event_id: str) -> SwipeOutcome:
        async def commit(viewer_id: str) -> SwipeOutcome:
            applied = await self.store.commit_pass(event_id, viewer_id)
            return SwipeOutcome(event_id, PASSED, duplicate=not applied)
        return await self._run(event_id, commit)

    async def _run(self, event_id: str, commit: Callable[[str], Awaitable[SwipeOutcome]]) -> SwipeOutcome:
        viewer_id = self.feed.viewer_id
        if not viewer_id:
            raise Unauthenticated()
        if self._busy:
            raise TransactionInFlight(f"a swipe is already in progress for {viewer_id}")
        self._busy = True
        removal = self.feed.remove_optimistically(event_id)
        task = asyncio.ensure_future(commit(viewer_id))
        try:
            outcome = await asyncio.shield(task)
        except asyncio.CancelledError:
            # the caller went away; the commit still finishes and settles local state itself
            task.add_done_callback(lambda t: self._settle_detached(t, removal))
            raise
        except EventNotFound:
            self._busy = False
            removal.rollback()
            raise
        except Exception as e:
            self._busy = False
            log.exception("swipe commit failed for event %s", event_id)
            removal.rollback()
            raise TransactionCommitFailure(event_id) from e
        self._busy = False
        removal.commit()
        if outcome.duplicate:
            log.info("event %s already consumed, ignoring repeat", event_id)
        return outcome

    def _settle_detached(self, task: asyncio.Future, removal) -> None:
        self._busy = False
        if task.cancelled() or task.exception() is not None:
            removal.rollback()
        else:
            removal.commit()
