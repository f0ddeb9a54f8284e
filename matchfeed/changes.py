"""
matchfeed/changes.py — in-process change feed for ledger and match records.

Writers publish after a successful commit; readers subscribe with a predicate and
iterate asynchronously. The Postgres backend feeds this from LISTEN/NOTIFY, the SQLite
backend publishes directly, so consumers never care which one is running.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional, Union

from .models import (
    FEED_ACTIONS, ChannelRecord, InterestEvent, LedgerChange, MatchCreated, MatchRecord,
)

log = logging.getLogger("changes")

Change = Union[LedgerChange, MatchCreated]
Predicate = Callable[[Change], bool]

_CLOSED = object()


class Subscription:
    def __init__(self, feed: "ChangeFeed", predicate: Optional[Predicate]):
        self._feed = feed
        self._predicate = predicate
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _offer(self, change: Change) -> None:
        if self.closed:
            return
        if self._predicate is None or self._predicate(change):
            self._queue.put_nowait(change)

    def _fail(self, exc: BaseException) -> None:
        if not self.closed:
            self._queue.put_nowait(exc)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._subs.discard(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Change:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.close()
            raise item
        return item


class ChangeFeed:
    def __init__(self):
        self._subs: set[Subscription] = set()

    def subscribe(self, predicate: Optional[Predicate] = None) -> Subscription:
        sub = Subscription(self, predicate)
        self._subs.add(sub)
        return sub

    def publish(self, change: Change) -> None:
        for sub in list(self._subs):
            sub._offer(change)

    def fail(self, exc: BaseException) -> None:
        """Terminate every open subscription with `exc` (e.g. the listener connection died)."""
        log.warning("change feed failed: %s", exc)
        for sub in list(self._subs):
            sub._fail(exc)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)


def pending_likes_for(viewer_id: str) -> Predicate:
    """Changes relevant to a viewer's likes feed: new unconsumed likes to them, or their consumption."""
    def _p(change: Change) -> bool:
        if not isinstance(change, LedgerChange):
            return False
        ev = change.event
        if ev.to_user_id != viewer_id or ev.action not in FEED_ACTIONS:
            return False
        return change.kind == "removed" or not ev.consumed
    return _p


# --- wire format for pg_notify payloads ---
def encode_change(change: Change) -> str:
    if isinstance(change, LedgerChange):
        body: dict[str, Any] = {"type": "ledger", "kind": change.kind, "event": change.event.to_dict()}
    else:
        body = {
            "type": "match",
            "match": change.match.to_dict(),
            "channel": change.channel.to_dict(),
        }
    return json.dumps(body, separators=(",", ":"))


def decode_change(payload: str) -> Change:
    body = json.loads(payload)
    if body["type"] == "ledger":
        return LedgerChange(kind=body["kind"], event=InterestEvent.from_dict(body["event"]))
    m, c = body["match"], body["channel"]
    match = MatchRecord(user_a=m["user_a"], user_b=m["user_b"], is_active=m["is_active"],
                        created_at=m["created_at"], id=m["id"])
    a, b = c["participants"]
    channel = ChannelRecord(user_a=a, user_b=b, related_match_id=c["related_match_id"],
                            is_mutual=c["is_mutual"], last_message=c["last_message"],
                            created_at=c["created_at"], id=c["id"], type=c["type"],
                            deletion_policy=c["deletion_policy"])
    return MatchCreated(match=match, channel=channel)
