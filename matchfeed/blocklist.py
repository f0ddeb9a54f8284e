# matchfeed/blocklist.py — block-list cache with an explicit TTL, shared read-only by all sessions
import logging
import time
from typing import Callable, Dict, FrozenSet, Optional, Protocol, Tuple

from . import config
from .errors import TransientFetchFailure

log = logging.getLogger("blocklist")


class BlockSource(Protocol):
    async def get_blocked_ids(self, user_id: str) -> set: ...


class BlockListCache:
    def __init__(self, source: BlockSource, *, ttl: float = config.BLOCK_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.source = source
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[float, FrozenSet[str]]] = {}

    async def get_blocked_ids(self, user_id: str) -> FrozenSet[str]:
        hit = self._entries.get(user_id)
        now = self.clock()
        if hit and now - hit[0] < self.ttl:
            return hit[1]
        try:
            ids = frozenset(await self.source.get_blocked_ids(user_id))
        except Exception as e:
            raise TransientFetchFailure(f"block list fetch failed for {user_id}") from e
        self._entries[user_id] = (now, ids)
        return ids

    def invalidate(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._entries.clear()
        else:
            self._entries.pop(user_id, None)
        log.debug("block cache invalidated: %s", user_id or "*")
