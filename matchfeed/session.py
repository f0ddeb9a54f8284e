"""
matchfeed/session.py — one actor per viewer: feed + reconciler + match coordinator.

Sessions share nothing mutable except the block-list cache, which they only read.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .blocklist import BlockListCache
from .errors import Unauthenticated
from .feed import LikerFeed
from .matching import MatchCoordinator
from .sync import LiveSyncReconciler

log = logging.getLogger("session")


class ViewerSession:
    def __init__(self, store, blocklist: BlockListCache, viewer_id: str, **feed_kwargs):
        if not viewer_id:
            raise Unauthenticated()
        self.viewer_id = viewer_id
        self.feed = LikerFeed(store, blocklist, viewer_id, **feed_kwargs)
        self.reconciler = LiveSyncReconciler(self.feed, store.changes)
        self.matcher = MatchCoordinator(store, self.feed)

    async def open(self) -> "ViewerSession":
        # subscribe first; the reconciler holds changes back until the first page is in
        self.reconciler.start()
        await self.feed.load()
        return self

    async def close(self) -> None:
        self.feed.close()
        await self.reconciler.stop()
        log.info("session closed for %s", self.viewer_id)


class SessionRegistry:
    def __init__(self, store, blocklist: Optional[BlockListCache] = None, **feed_kwargs):
        self.store = store
        self.blocklist = blocklist or BlockListCache(store)
        self.feed_kwargs = feed_kwargs
        self._sessions: Dict[str, ViewerSession] = {}
        self._lock = asyncio.Lock()

    def get(self, viewer_id: str) -> Optional[ViewerSession]:
        return self._sessions.get(viewer_id)

    async def open(self, viewer_id: str) -> ViewerSession:
        if not viewer_id:
            raise Unauthenticated()
        async with self._lock:
            session = self._sessions.get(viewer_id)
            if session is None:
                session = ViewerSession(self.store, self.blocklist, viewer_id, **self.feed_kwargs)
                self._sessions[viewer_id] = session
                log.info("session opened for %s", viewer_id)
                await session.open()
            return session

    async def block(self, user_id: str, blocked_id: str) -> None:
        """Record a block and hide each user from the other's open feed right away."""
        if not user_id:
            raise Unauthenticated()
        await self.store.add_block(user_id, blocked_id)
        self.blocklist.invalidate(user_id)
        self.blocklist.invalidate(blocked_id)
        for viewer, other in ((user_id, blocked_id), (blocked_id, user_id)):
            session = self._sessions.get(viewer)
            if session is not None:
                session.feed.hide_user(other)
        log.info("%s blocked %s", user_id, blocked_id)

    async def close(self, viewer_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(viewer_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        async with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            await session.close()
