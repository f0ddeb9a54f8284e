import asyncio

import pytest

from matchfeed.blocklist import BlockListCache
from matchfeed.database import SQLiteBackend
from matchfeed.errors import EventNotFound, Unauthenticated
from matchfeed.feed import LikerFeed
from matchfeed.filters import FilterSpec, Range
from matchfeed.models import Location

from conftest import VIEWER, fixed_clock, init_store, make_profile, seed_likes


def make_feed(store, blocklist, viewer=VIEWER, **kwargs) -> LikerFeed:
    kwargs.setdefault("page_size", 20)
    return LikerFeed(store, blocklist, viewer, clock=fixed_clock, **kwargs)


def assert_sorted_unique(feed: LikerFeed):
    scores = [l.match_score for l in feed.entries]
    assert scores == sorted(scores, reverse=True)
    ids = [l.event_id for l in feed.entries]
    assert len(ids) == len(set(ids))


class TestPagination:

    def test_load_then_refill(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 25)
            feed = make_feed(store, blocklist)

            state = await feed.load()
            assert len(state.entries) == 20
            assert state.has_more is True
            assert state.total_count == 25
            assert_sorted_unique(feed)

            state = await feed.refill()
            assert len(state.entries) == 25
            assert state.has_more is False
            assert state.total_count == 25
            assert_sorted_unique(feed)

        asyncio.run(scenario())

    def test_refill_after_last_page_is_noop(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 40)
            feed = make_feed(store, blocklist)
            await feed.load()
            await feed.refill()
            # a full page came back, so one more (empty) fetch is allowed
            assert feed.state.has_more is True
            await feed.refill()
            assert feed.state.has_more is False
            before = feed.entries
            await feed.refill()
            assert [l.event_id for l in feed.entries] == [l.event_id for l in before]
            assert len(feed.entries) == 40

        asyncio.run(scenario())

    def test_concurrent_refills_fetch_once(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 60)
            feed = make_feed(store, blocklist)
            await feed.load()
            await asyncio.gather(feed.refill(), feed.refill())
            assert len(feed.entries) == 40
            assert_sorted_unique(feed)

        asyncio.run(scenario())

    def test_entries_follow_distance(self, store, blocklist):
        async def scenario():
            events = await seed_likes(store, 3)
            feed = make_feed(store, blocklist)
            await feed.load()
            assert feed.entries[0].event_id == events[0].id
            assert feed.entries[0].distance_km == pytest.approx(0)
            assert all(l.completeness > 0 for l in feed.entries)

        asyncio.run(scenario())

    def test_empty_feed(self, store, blocklist):
        async def scenario():
            feed = make_feed(store, blocklist)
            state = await feed.load()
            assert state.entries == []
            assert state.total_count == 0
            assert state.has_more is False
            assert state.error is None
            assert state.loading is False

        asyncio.run(scenario())

    def test_passes_are_not_listed(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 2)
            await seed_likes(store, 1, start=10, action="superlike")
            await seed_likes(store, 1, start=20, action="pass")
            feed = make_feed(store, blocklist)
            await feed.load()
            assert sorted(l.id for l in feed.entries) == ["u000", "u001", "u010"]

        asyncio.run(scenario())

    def test_no_viewer(self, store, blocklist):
        feed = make_feed(store, blocklist, viewer=None)
        with pytest.raises(Unauthenticated):
            asyncio.run(feed.load())


class TestExclusions:

    def test_blocked_both_ways(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 5)
            await store.add_block(VIEWER, "u001")
            await store.add_block("u002", VIEWER)
            feed = make_feed(store, blocklist)
            await feed.load()
            ids = {l.id for l in feed.entries}
            assert ids == {"u000", "u003", "u004"}

        asyncio.run(scenario())

    def test_block_list_failure_fails_open(self, store):
        class Broken:
            async def get_blocked_ids(self, user_id):
                raise ConnectionError("block service down")

        async def scenario():
            await seed_likes(store, 3)
            feed = make_feed(store, BlockListCache(Broken()))
            await feed.load()
            assert len(feed.entries) == 3
            assert feed.state.error is None

        asyncio.run(scenario())

    def test_one_failing_profile_is_skipped(self, db_path):
        class FlakyProfiles(SQLiteBackend):
            async def get_profile(self, user_id):
                if user_id == "u003":
                    raise RuntimeError("profile store timeout")
                return await super().get_profile(user_id)

        store = init_store(FlakyProfiles(db_path))

        async def scenario():
            await seed_likes(store, 5)
            feed = make_feed(store, BlockListCache(store))
            await feed.load()
            assert sorted(l.id for l in feed.entries) == ["u000", "u001", "u002", "u004"]
            assert feed.state.error is None

        asyncio.run(scenario())

    def test_missing_profile_is_skipped(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 2)
            await store.record_interest("ghost", VIEWER, "like")
            feed = make_feed(store, blocklist)
            await feed.load()
            assert sorted(l.id for l in feed.entries) == ["u000", "u001"]

        asyncio.run(scenario())

    def test_ledger_failure_sets_error(self, db_path):
        class DownLedger(SQLiteBackend):
            async def fetch_likes_page(self, to_user_id, **kwargs):
                raise ConnectionError("ledger unreachable")

        store = init_store(DownLedger(db_path))

        async def scenario():
            feed = make_feed(store, BlockListCache(store))
            state = await feed.load()
            assert state.error == "Failed to fetch likers"
            assert state.entries == []
            assert state.loading is False

        asyncio.run(scenario())


class TestConsumption:

    def test_mark_consumed(self, store, blocklist):
        async def scenario():
            events = await seed_likes(store, 3)
            feed = make_feed(store, blocklist)
            await feed.load()

            assert await feed.mark_consumed(events[1].id) is True
            assert feed.index_of(events[1].id) is None
            assert feed.state.total_count == 2
            assert (await store.get_event(events[1].id)).consumed is True

            assert await feed.mark_consumed(events[1].id) is False
            assert feed.state.total_count == 2

            with pytest.raises(EventNotFound):
                await feed.mark_consumed("nope")

        asyncio.run(scenario())

    def test_mark_consumed_only_for_own_likes(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 2)
            elsewhere = await store.record_interest("u000", "someone_else", "like")
            passed = await store.record_interest("u001", VIEWER, "pass")
            feed = make_feed(store, blocklist)
            await feed.load()

            for event in (elsewhere, passed):
                with pytest.raises(EventNotFound):
                    await feed.mark_consumed(event.id)
                assert (await store.get_event(event.id)).consumed is False
            assert feed.state.total_count == 2

            other = make_feed(store, blocklist, viewer="someone_else")
            await other.load()
            assert [l.event_id for l in other.entries] == [elsewhere.id]

        asyncio.run(scenario())

    def test_count_read_does_not_undo_removal_made_meanwhile(self, db_path):
        class GatedCount(SQLiteBackend):
            gate = None
            parked = None

            async def count_pending_likes(self, to_user_id, exclude=()):
                n = await super().count_pending_likes(to_user_id, exclude)
                if self.gate is not None:
                    self.parked.set()
                    await self.gate.wait()
                return n

        store = init_store(GatedCount(db_path))

        async def scenario():
            await seed_likes(store, 3)
            feed = make_feed(store, BlockListCache(store))
            await feed.load()
            late = (await seed_likes(store, 1, start=3))[0]

            store.gate, store.parked = asyncio.Event(), asyncio.Event()
            ingest = asyncio.create_task(feed.ingest(late))
            await store.parked.wait()
            # the count above was read before this removal
            removed = feed.entries[0].event_id
            feed.remove_optimistically(removed)
            store.gate.set()
            await ingest

            store.gate = None
            assert feed.state.total_count == 3
            assert await store.count_pending_likes(VIEWER, exclude=[removed]) == 3

        asyncio.run(scenario())

    def test_refetch_picks_up_new_likes(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 3)
            feed = make_feed(store, blocklist)
            await feed.load()
            await seed_likes(store, 1, start=3)
            assert len(feed.entries) == 3
            await feed.refetch()
            assert len(feed.entries) == 4
            assert feed.state.total_count == 4

        asyncio.run(scenario())

    def test_refetch_rescores_after_viewer_moves(self, store, blocklist):
        async def scenario():
            await seed_likes(store, 1)
            feed = make_feed(store, blocklist)
            await feed.load()
            near = feed.entries[0].match_score
            await store.save_profile(make_profile(VIEWER, location=Location(40.3, -74.0)))
            await feed.refetch()
            assert feed.entries[0].match_score < near

        asyncio.run(scenario())


def test_view_applies_filters(store, blocklist):
    async def scenario():
        await store.save_profile(make_profile("nurse", occupation="Nurse", age=27))
        await store.save_profile(make_profile("chef", occupation="Chef", age=45))
        await store.record_interest("nurse", VIEWER, "like")
        await store.record_interest("chef", VIEWER, "like")
        feed = make_feed(store, blocklist)
        await feed.load()
        assert feed.occupations() == ["Chef", "Nurse"]
        assert [l.id for l in feed.view(FilterSpec(age_range=Range(25, 35)))] == ["nurse"]
        assert len(feed.view()) == 2

    asyncio.run(scenario())
