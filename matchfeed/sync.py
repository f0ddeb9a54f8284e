# matchfeed/sync.py — keeps a LikerFeed current from the ledger change feed
import asyncio
import logging
from typing import Optional

from .changes import ChangeFeed, Subscription, pending_likes_for
from .feed import LikerFeed
from .models import LedgerChange

log = logging.getLogger("sync")


class LiveSyncReconciler:
    """
    Applies ledger changes for the feed's viewer: new pending likes are joined and inserted,
    consumed ones are stripped. Changes that arrive while a load is running wait until the
    load has published its page, then go through the same dedup as pagination.
    A failing subscription is logged and left closed; the feed keeps working via pagination.
    """

    def __init__(self, feed: LikerFeed, changes: ChangeFeed):
        self.feed = feed
        self.changes = changes
        self._sub: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        if not self.feed.viewer_id:
            raise ValueError("feed has no viewer")
        self._sub = self.changes.subscribe(pending_likes_for(self.feed.viewer_id))
        self._task = asyncio.create_task(self._run(), name=f"likes-sync-{self.feed.viewer_id}")

    async def stop(self) -> None:
        if self._sub is not None:
            self._sub.close()
            self._sub = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        sub = self._sub
        try:
            async for change in sub:
                await self.feed.wait_ready()
                if self.feed.closed:
                    break
                try:
                    await self.apply(change)
                except Exception:
                    log.exception("failed to apply %s for %s", change, self.feed.viewer_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("likes listener error for %s; falling back to pagination", self.feed.viewer_id)
        finally:
            sub.close()

    async def apply(self, change: LedgerChange) -> None:
        if change.kind == "added":
            await self.feed.ingest(change.event)
        elif change.kind == "removed":
            await self.feed.forget(change.event.id)
