import asyncio
import logging

import pytest

from matchfeed.changes import pending_likes_for
from matchfeed.database import SQLiteBackend
from matchfeed.blocklist import BlockListCache
from matchfeed.models import LedgerChange, InterestEvent, Location
from matchfeed.session import SessionRegistry, ViewerSession
from matchfeed.sync import LiveSyncReconciler

from conftest import VIEWER, fixed_clock, init_store, make_profile, seed_likes, wait_for
from test_feed import assert_sorted_unique, make_feed


class HookedStore(SQLiteBackend):
    """Runs a hook right before or right after the likes page query."""

    def __init__(self, path):
        super().__init__(path)
        self.before_page = None
        self.after_page = None

    async def fetch_likes_page(self, to_user_id, **kwargs):
        if self.before_page is not None:
            hook, self.before_page = self.before_page, None
            await hook()
        rows = await super().fetch_likes_page(to_user_id, **kwargs)
        if self.after_page is not None:
            hook, self.after_page = self.after_page, None
            await hook()
        return rows


def test_predicate_scope():
    accept = pending_likes_for(VIEWER)
    assert accept(LedgerChange("added", InterestEvent("a", VIEWER, "like")))
    assert accept(LedgerChange("added", InterestEvent("a", VIEWER, "superlike")))
    assert not accept(LedgerChange("added", InterestEvent("a", VIEWER, "pass")))
    assert not accept(LedgerChange("added", InterestEvent("a", "someone", "like")))
    assert not accept(LedgerChange("added", InterestEvent("a", VIEWER, "like", consumed=True)))
    assert accept(LedgerChange("removed", InterestEvent("a", VIEWER, "like", consumed=True)))


class TestLiveUpdates:

    def test_insert_lands_at_score_position(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 5, start=1)
            feed = make_feed(store, blocklist)
            sync = LiveSyncReconciler(feed, store.changes)
            sync.start()
            await feed.load()
            assert feed.state.total_count == 5

            await store.save_profile(make_profile("fresh"))
            top = await store.record_interest("fresh", VIEWER, "like")
            assert await wait_for(lambda: feed.index_of(top.id) is not None)
            assert feed.index_of(top.id) == 0
            assert await wait_for(lambda: feed.state.total_count == 6)

            await store.save_profile(make_profile("middle", location=Location(40.035, -74.0)))
            mid = await store.record_interest("middle", VIEWER, "superlike")
            assert await wait_for(lambda: feed.index_of(mid.id) is not None)
            assert 0 < feed.index_of(mid.id) < len(feed.entries) - 1
            assert_sorted_unique(feed)
            assert await wait_for(lambda: feed.state.total_count == 7)
            await sync.stop()

        asyncio.run(scenario())

    def test_consumed_elsewhere_is_stripped(self, store, blocklist):
        async def scenario():
            events = await seed_likes(store, 4)
            feed = make_feed(store, blocklist)
            sync = LiveSyncReconciler(feed, store.changes)
            sync.start()
            await feed.load()

            await store.mark_consumed(events[2].id, VIEWER)
            assert await wait_for(lambda: feed.index_of(events[2].id) is None)
            assert await wait_for(lambda: feed.state.total_count == 3)
            await sync.stop()

        asyncio.run(scenario())

    def test_unrelated_changes_are_ignored(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 2)
            feed = make_feed(store, blocklist)
            sync = LiveSyncReconciler(feed, store.changes)
            sync.start()
            await feed.load()

            await store.save_profile(make_profile("other"))
            await store.record_interest("other", VIEWER, "pass")
            await store.record_interest("other", "someone_else", "like")
            await store.record_interest("other", VIEWER, "like", consumed=True)
            last = await store.record_interest("other", VIEWER, "like")
            assert await wait_for(lambda: feed.index_of(last.id) is not None)
            assert len(feed.entries) == 3
            await sync.stop()

        asyncio.run(scenario())

    def test_blocked_liker_is_not_inserted(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 1)
            await store.add_block(VIEWER, "blocked")
            await store.save_profile(make_profile("blocked"))
            await store.save_profile(make_profile("ok"))
            feed = make_feed(store, blocklist)
            sync = LiveSyncReconciler(feed, store.changes)
            sync.start()
            await feed.load()

            await store.record_interest("blocked", VIEWER, "like")
            ok = await store.record_interest("ok", VIEWER, "like")
            assert await wait_for(lambda: feed.index_of(ok.id) is not None)
            assert "blocked" not in {l.id for l in feed.entries}
            await sync.stop()

        asyncio.run(scenario())

    @pytest.mark.parametrize("moment", ["before_page", "after_page"])
    def test_like_during_load_appears_once(self, db_path, moment):
        store = init_store(HookedStore(db_path))

        async def scenario():
            await seed_likes(store, 3)
            await store.save_profile(make_profile("late"))
            recorded = []

            async def hook():
                recorded.append(await store.record_interest("late", VIEWER, "like"))

            setattr(store, moment, hook)
            feed = make_feed(store, BlockListCache(store))
            sync = LiveSyncReconciler(feed, store.changes)
            sync.start()
            await feed.load()

            event_id = recorded[0].id
            assert await wait_for(lambda: feed.index_of(event_id) is not None)
            await asyncio.sleep(0.05)
            assert [l.event_id for l in feed.entries].count(event_id) == 1
            assert len(feed.entries) == 4
            assert feed.state.total_count == 4
            await sync.stop()

        asyncio.run(scenario())

    def test_listener_failure_falls_back_to_pagination(self, store, blocklist, caplog):
        async def scenario():
            await seed_likes(store, 2)
            feed = make_feed(store, blocklist)
            sync = LiveSyncReconciler(feed, store.changes)
            sync.start()
            await feed.load()

            store.changes.fail(ConnectionError("listener lost"))
            assert await wait_for(lambda: not sync.running)
            assert store.changes.subscriber_count == 0

            await seed_likes(store, 1, start=2)
            await feed.refetch()
            assert len(feed.entries) == 3
            assert feed.state.error is None

        with caplog.at_level(logging.ERROR, logger="sync"):
            asyncio.run(scenario())
        assert "falling back to pagination" in caplog.text


class TestSessions:

    def test_close_stops_reconciliation(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 2)
            session = await ViewerSession(store, blocklist, VIEWER, clock=fixed_clock).open()
            assert len(session.feed.entries) == 2
            await session.close()
            assert store.changes.subscriber_count == 0

            await seed_likes(store, 1, start=5)
            await asyncio.sleep(0.05)
            assert len(session.feed.entries) == 2

        asyncio.run(scenario())

    def test_registry_reuses_sessions(self, store):
        async def scenario():
            registry = SessionRegistry(store, clock=fixed_clock)
            first = await registry.open(VIEWER)
            again = await registry.open(VIEWER)
            assert first is again
            other = await registry.open("someone")
            assert other is not first
            assert store.changes.subscriber_count == 2

            assert await registry.close(VIEWER) is True
            assert await registry.close(VIEWER) is False
            await registry.close_all()
            assert registry.get("someone") is None
            assert store.changes.subscriber_count == 0

        asyncio.run(scenario())
