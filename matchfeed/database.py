"""
matchfeed/database.py — storage layer for the likes feed
- SQLite (aiosqlite) by default
- Postgres (asyncpg) when USE_POSTGRES=1
Tables (auto-created):
  users(user_id PK, profile JSON)                  -- profile store, read-only to the feed
  blocks(user_id, blocked_id) PK(user_id, blocked_id)
  interest_events(id PK, from_user_id, to_user_id, action, consumed, created_at)
  matches(id PK, user_a, user_b, pair_key, is_active, created_at)  -- one active row per pair
  channels(id PK, user_a, user_b, related_match_id UNIQUE, is_mutual, last_message, created_at, ...)
Queries are written once with `?` placeholders; the PG backend renumbers them to $n.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

from . import config
from .changes import Change, ChangeFeed, decode_change, encode_change
from .errors import EventNotFound
from .models import (
    FEED_ACTIONS, LIKE, PASS, ACTIONS, CandidateProfile, ChannelRecord, InterestEvent,
    LedgerChange, MatchCreated, MatchRecord, pair_key,
)

log = logging.getLogger("db")

NOTIFY_CHANNEL = "matchfeed_changes"

EVENT_COLS = "id, from_user_id, to_user_id, action, consumed, created_at"
MATCH_COLS = "id, user_a, user_b, is_active, created_at"
CHANNEL_COLS = "id, user_a, user_b, related_match_id, is_mutual, last_message, created_at, type, deletion_policy"
_FEED_ACTIONS_SQL = ", ".join(f"'{a}'" for a in FEED_ACTIONS)

SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
      user_id  TEXT PRIMARY KEY,
      profile  TEXT NOT NULL DEFAULT '{}'
    )""",
    """
    CREATE TABLE IF NOT EXISTS blocks (
      user_id     TEXT NOT NULL,
      blocked_id  TEXT NOT NULL,
      created_at  REAL NOT NULL,
      PRIMARY KEY (user_id, blocked_id)
    )""",
    """
    CREATE TABLE IF NOT EXISTS interest_events (
      id            TEXT PRIMARY KEY,
      from_user_id  TEXT NOT NULL,
      to_user_id    TEXT NOT NULL,
      action        TEXT NOT NULL,
      consumed      INTEGER NOT NULL DEFAULT 0,
      created_at    REAL NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS matches (
      id          TEXT PRIMARY KEY,
      user_a      TEXT NOT NULL,
      user_b      TEXT NOT NULL,
      pair_key    TEXT NOT NULL,
      is_active   INTEGER NOT NULL DEFAULT 1,
      created_at  REAL NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS channels (
      id                TEXT PRIMARY KEY,
      user_a            TEXT NOT NULL,
      user_b            TEXT NOT NULL,
      related_match_id  TEXT NOT NULL UNIQUE,
      is_mutual         INTEGER NOT NULL DEFAULT 1,
      last_message      TEXT,
      created_at        REAL NOT NULL,
      type              TEXT NOT NULL DEFAULT 'dating',
      deletion_policy   TEXT NOT NULL DEFAULT 'on_unmatch'
    )""",
    "CREATE INDEX IF NOT EXISTS idx_events_inbox ON interest_events(to_user_id, action, consumed, created_at)",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_matches_active_pair ON matches(pair_key) WHERE is_active = 1",
]

PG_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
      user_id  TEXT PRIMARY KEY,
      profile  JSONB NOT NULL DEFAULT '{}'::jsonb
    )""",
    """
    CREATE TABLE IF NOT EXISTS blocks (
      user_id     TEXT NOT NULL,
      blocked_id  TEXT NOT NULL,
      created_at  DOUBLE PRECISION NOT NULL,
      PRIMARY KEY (user_id, blocked_id)
    )""",
    """
    CREATE TABLE IF NOT EXISTS interest_events (
      id            TEXT PRIMARY KEY,
      from_user_id  TEXT NOT NULL,
      to_user_id    TEXT NOT NULL,
      action        TEXT NOT NULL CHECK (action IN ('like','pass','superlike')),
      consumed      BOOLEAN NOT NULL DEFAULT FALSE,
      created_at    DOUBLE PRECISION NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS matches (
      id          TEXT PRIMARY KEY,
      user_a      TEXT NOT NULL,
      user_b      TEXT NOT NULL,
      pair_key    TEXT NOT NULL,
      is_active   BOOLEAN NOT NULL DEFAULT TRUE,
      created_at  DOUBLE PRECISION NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS channels (
      id                TEXT PRIMARY KEY,
      user_a            TEXT NOT NULL,
      user_b            TEXT NOT NULL,
      related_match_id  TEXT NOT NULL UNIQUE REFERENCES matches(id),
      is_mutual         BOOLEAN NOT NULL DEFAULT TRUE,
      last_message      TEXT,
      created_at        DOUBLE PRECISION NOT NULL,
      type              TEXT NOT NULL DEFAULT 'dating',
      deletion_policy   TEXT NOT NULL DEFAULT 'on_unmatch'
    )""",
    "CREATE INDEX IF NOT EXISTS idx_events_inbox ON interest_events(to_user_id, action, consumed, created_at)",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_matches_active_pair ON matches(pair_key) WHERE is_active",
]


def _event(row) -> InterestEvent:
    return InterestEvent(id=row["id"], from_user_id=row["from_user_id"], to_user_id=row["to_user_id"],
                         action=row["action"], consumed=bool(row["consumed"]),
                         created_at=float(row["created_at"]))


def _match(row) -> MatchRecord:
    return MatchRecord(id=row["id"], user_a=row["user_a"], user_b=row["user_b"],
                       is_active=bool(row["is_active"]), created_at=float(row["created_at"]))


def _channel(row) -> ChannelRecord:
    return ChannelRecord(id=row["id"], user_a=row["user_a"], user_b=row["user_b"],
                         related_match_id=row["related_match_id"], is_mutual=bool(row["is_mutual"]),
                         last_message=row["last_message"], created_at=float(row["created_at"]),
                         type=row["type"], deletion_policy=row["deletion_policy"])


class Backend:
    """Shared queries and the atomic swipe commits; subclasses supply connections and SQL dialect."""

    LOCK = ""  # row lock suffix for check-then-act reads

    def __init__(self):
        self.changes = ChangeFeed()

    # --- dialect primitives (overridden) ---
    def _conn(self):
        raise NotImplementedError

    def _tx(self):
        raise NotImplementedError

    async def _fetch(self, con, sql: str, *args) -> list:
        raise NotImplementedError

    async def _execute(self, con, sql: str, *args) -> None:
        raise NotImplementedError

    async def _fetchrow(self, con, sql: str, *args):
        rows = await self._fetch(con, sql, *args)
        return rows[0] if rows else None

    def _json_param(self, value: dict) -> Any:
        return json.dumps(value)

    async def _notify(self, con, changes: Sequence[Change]) -> None:
        """Called inside the transaction."""

    def _after_commit(self, changes: Sequence[Change]) -> None:
        """Called once the transaction has committed."""

    async def init(self, reset: bool = False) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    # --- profile store ---
    async def save_profile(self, profile: CandidateProfile) -> None:
        data = profile.to_dict()
        data.pop("id", None)
        async with self._conn() as con:
            await self._execute(con, """
              INSERT INTO users (user_id, profile) VALUES (?, ?)
              ON CONFLICT (user_id) DO UPDATE SET profile = EXCLUDED.profile
            """, profile.id, self._json_param(data))

    async def get_profile(self, user_id: str) -> Optional[CandidateProfile]:
        async with self._conn() as con:
            row = await self._fetchrow(con, "SELECT profile FROM users WHERE user_id = ?", user_id)
        if row is None:
            return None
        data = row["profile"]
        if isinstance(data, str):
            data = json.loads(data or "{}")
        return CandidateProfile.from_dict(data or {}, user_id=user_id)

    # --- block list ---
    async def add_block(self, user_id: str, blocked_id: str) -> None:
        async with self._conn() as con:
            await self._execute(con, """
              INSERT INTO blocks (user_id, blocked_id, created_at) VALUES (?, ?, ?)
              ON CONFLICT (user_id, blocked_id) DO NOTHING
            """, user_id, blocked_id, time.time())

    async def get_blocked_ids(self, user_id: str) -> set[str]:
        """Users hidden from `user_id`: the ones they blocked and the ones who blocked them."""
        async with self._conn() as con:
            rows = await self._fetch(con, """
              SELECT blocked_id AS other FROM blocks WHERE user_id = ?
              UNION
              SELECT user_id AS other FROM blocks WHERE blocked_id = ?
            """, user_id, user_id)
        return {r["other"] for r in rows}

    # --- interest ledger ---
    async def record_interest(self, from_user_id: str, to_user_id: str, action: str, *,
                              consumed: bool = False, created_at: Optional[float] = None) -> InterestEvent:
        if action not in ACTIONS:
            raise ValueError(f"unknown action {action!r}")
        event = InterestEvent(from_user_id, to_user_id, action, consumed=consumed,
                              created_at=created_at if created_at is not None else time.time())
        changes = [LedgerChange("added", event)]
        async with self._tx() as con:
            await self._insert_event(con, event)
            await self._notify(con, changes)
        self._after_commit(changes)
        return event

    async def get_event(self, event_id: str) -> Optional[InterestEvent]:
        async with self._conn() as con:
            row = await self._fetchrow(con, f"SELECT {EVENT_COLS} FROM interest_events WHERE id = ?", event_id)
        return _event(row) if row else None

    async def fetch_likes_page(self, to_user_id: str, *, limit: int,
                               cursor: Optional[tuple[float, str]] = None) -> list[InterestEvent]:
        """Unconsumed likes to `to_user_id`, newest first, strictly older than `cursor`."""
        sql = f"""
          SELECT {EVENT_COLS} FROM interest_events
           WHERE to_user_id = ? AND action IN ({_FEED_ACTIONS_SQL}) AND consumed = ?
        """
        params: list[Any] = [to_user_id, False]
        if cursor is not None:
            sql += " AND (created_at < ? OR (created_at = ? AND id < ?))"
            params += [cursor[0], cursor[0], cursor[1]]
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        async with self._conn() as con:
            rows = await self._fetch(con, sql, *params)
        return [_event(r) for r in rows]

    async def count_pending_likes(self, to_user_id: str, exclude: Sequence[str] = ()) -> int:
        """Unconsumed likes to `to_user_id`, not counting the event ids in `exclude`."""
        sql = f"""
          SELECT COUNT(*) AS n FROM interest_events
           WHERE to_user_id = ? AND action IN ({_FEED_ACTIONS_SQL}) AND consumed = ?
        """
        params: list[Any] = [to_user_id, False]
        if exclude:
            sql += f" AND id NOT IN ({', '.join('?' for _ in exclude)})"
            params += list(exclude)
        async with self._conn() as con:
            row = await self._fetchrow(con, sql, *params)
        return int(row["n"])

    async def list_events(self, *, from_user_id: Optional[str] = None,
                          to_user_id: Optional[str] = None) -> list[InterestEvent]:
        conds, params = [], []
        if from_user_id is not None:
            conds.append("from_user_id = ?"); params.append(from_user_id)
        if to_user_id is not None:
            conds.append("to_user_id = ?"); params.append(to_user_id)
        where = f"WHERE {' AND '.join(conds)}" if conds else ""
        async with self._conn() as con:
            rows = await self._fetch(con, f"SELECT {EVENT_COLS} FROM interest_events {where} ORDER BY created_at", *params)
        return [_event(r) for r in rows]

    async def list_matches(self, user_id: str) -> list[MatchRecord]:
        async with self._conn() as con:
            rows = await self._fetch(con, f"SELECT {MATCH_COLS} FROM matches WHERE user_a = ? OR user_b = ? ORDER BY created_at",
                                     user_id, user_id)
        return [_match(r) for r in rows]

    async def list_channels(self, user_id: str) -> list[ChannelRecord]:
        async with self._conn() as con:
            rows = await self._fetch(con, f"SELECT {CHANNEL_COLS} FROM channels WHERE user_a = ? OR user_b = ? ORDER BY created_at",
                                     user_id, user_id)
        return [_channel(r) for r in rows]

    async def mark_consumed(self, event_id: str, viewer_id: str) -> bool:
        """Flip `consumed` on a like addressed to `viewer_id`; False when it was already set."""
        async with self._tx() as con:
            event = await self._lock_like(con, event_id, viewer_id)
            if event.consumed:
                return False
            await self._consume_original(con, event)
            changes = [LedgerChange("removed", event)]
            await self._notify(con, changes)
        self._after_commit(changes)
        return True

    # --- atomic swipe commits ---
    async def commit_like_back(self, event_id: str, viewer_id: str, *, now: Optional[float] = None):
        """
        Consume the pending like, record the reciprocal like and open one match + channel
        for the pair, all in one transaction. Returns (match, channel, created) or None
        when the event was already consumed.
        """
        now = now if now is not None else time.time()
        async with self._tx() as con:
            event = await self._lock_like(con, event_id, viewer_id)
            if event.consumed:
                return None
            other = event.from_user_id
            reciprocal = InterestEvent(viewer_id, other, LIKE, consumed=True, created_at=now)
            await self._consume_original(con, event)
            await self._insert_reciprocal(con, reciprocal)
            match = await self._active_match(con, pair_key(viewer_id, other))
            created = match is None
            if created:
                match = MatchRecord(viewer_id, other, created_at=now)
                channel = ChannelRecord(viewer_id, other, related_match_id=match.id, created_at=now)
                await self._insert_match(con, match)
                await self._insert_channel(con, channel)
            else:
                channel = await self._channel_for(con, match.id)
            changes: list[Change] = [LedgerChange("removed", event), LedgerChange("added", reciprocal)]
            if created:
                changes.append(MatchCreated(match, channel))
            await self._notify(con, changes)
        self._after_commit(changes)
        return match, channel, created

    async def commit_pass(self, event_id: str, viewer_id: str, *, now: Optional[float] = None) -> bool:
        """Consume the pending like and record a pass. False when it was already consumed."""
        now = now if now is not None else time.time()
        async with self._tx() as con:
            event = await self._lock_like(con, event_id, viewer_id)
            if event.consumed:
                return False
            reply = InterestEvent(viewer_id, event.from_user_id, PASS, consumed=True, created_at=now)
            await self._consume_original(con, event)
            await self._insert_reciprocal(con, reply)
            changes = [LedgerChange("removed", event), LedgerChange("added", reply)]
            await self._notify(con, changes)
        self._after_commit(changes)
        return True

    # one method per commit step
    async def _lock_event(self, con, event_id: str) -> Optional[InterestEvent]:
        row = await self._fetchrow(con, f"SELECT {EVENT_COLS} FROM interest_events WHERE id = ?{self.LOCK}", event_id)
        return _event(row) if row else None

    async def _lock_like(self, con, event_id: str, viewer_id: str) -> InterestEvent:
        """Lock a like or superlike sent to `viewer_id`; anything else is not the viewer's to act on."""
        event = await self._lock_event(con, event_id)
        if event is None or event.to_user_id != viewer_id or event.action not in FEED_ACTIONS:
            raise EventNotFound(event_id)
        return event

    async def _consume_original(self, con, event: InterestEvent) -> None:
        await self._execute(con, "UPDATE interest_events SET consumed = ? WHERE id = ?", True, event.id)
        event.consumed = True

    async def _insert_event(self, con, event: InterestEvent) -> None:
        await self._execute(con, f"INSERT INTO interest_events ({EVENT_COLS}) VALUES (?, ?, ?, ?, ?, ?)",
                            event.id, event.from_user_id, event.to_user_id, event.action,
                            event.consumed, event.created_at)

    async def _insert_reciprocal(self, con, event: InterestEvent) -> None:
        await self._insert_event(con, event)

    async def _active_match(self, con, key: str) -> Optional[MatchRecord]:
        row = await self._fetchrow(con, f"SELECT {MATCH_COLS} FROM matches WHERE pair_key = ? AND is_active = ?", key, True)
        return _match(row) if row else None

    async def _insert_match(self, con, match: MatchRecord) -> None:
        await self._execute(con, f"INSERT INTO matches ({MATCH_COLS}, pair_key) VALUES (?, ?, ?, ?, ?, ?)",
                            match.id, match.user_a, match.user_b, match.is_active, match.created_at, match.pair_key)

    async def _channel_for(self, con, match_id: str) -> Optional[ChannelRecord]:
        row = await self._fetchrow(con, f"SELECT {CHANNEL_COLS} FROM channels WHERE related_match_id = ?", match_id)
        return _channel(row) if row else None

    async def _insert_channel(self, con, channel: ChannelRecord) -> None:
        await self._execute(con, f"INSERT INTO channels ({CHANNEL_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                            channel.id, channel.user_a, channel.user_b, channel.related_match_id,
                            channel.is_mutual, channel.last_message, channel.created_at,
                            channel.type, channel.deletion_policy)


class SQLiteBackend(Backend):
    def __init__(self, path: str):
        super().__init__()
        self.path = path

    async def init(self, reset: bool = False) -> None:
        import aiosqlite
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        if reset and os.path.exists(self.path):
            os.remove(self.path)
        async with aiosqlite.connect(self.path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            for stmt in SQLITE_SCHEMA:
                await db.execute(stmt)
            await db.commit()
        log.info("[db] sqlite ready → %s", self.path)

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[Any]:
        import aiosqlite
        # autocommit; transactions are opened explicitly in _tx
        async with aiosqlite.connect(self.path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[Any]:
        async with self._conn() as db:
            # IMMEDIATE takes the write lock up front, so check-then-act reads are serialized
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")

    async def _fetch(self, con, sql: str, *args) -> list:
        cur = await con.execute(sql, args)
        rows = await cur.fetchall()
        await cur.close()
        return list(rows)

    async def _execute(self, con, sql: str, *args) -> None:
        await con.execute(sql, args)

    def _after_commit(self, changes: Sequence[Change]) -> None:
        for change in changes:
            self.changes.publish(change)


_PLACEHOLDER = re.compile(r"\?")


def _pg_sql(sql: str) -> str:
    counter = iter(range(1, 10_000))
    return _PLACEHOLDER.sub(lambda _m: f"${next(counter)}", sql)


class PGBackend(Backend):
    LOCK = " FOR UPDATE"

    def __init__(self, dsn: str, *, pool_min: int = 1, pool_max: int = 10, timeout: float = 10):
        super().__init__()
        self.dsn = dsn
        self.pool_min = pool_min
        self.pool_max = pool_max
        self.timeout = timeout
        self.pool = None
        self._listener = None

    async def init(self, reset: bool = False) -> None:
        import asyncpg
        self.pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self.pool_min, max_size=self.pool_max,
                                              timeout=self.timeout, command_timeout=60)
        async with self.pool.acquire() as con:
            if reset:
                await con.execute("DROP TABLE IF EXISTS channels, matches, interest_events, blocks, users")
            for stmt in PG_SCHEMA:
                await con.execute(stmt)
        # dedicated connection for LISTEN; NOTIFY is delivered only after the writer commits
        self._listener = await asyncpg.connect(dsn=self.dsn, timeout=self.timeout)
        await self._listener.add_listener(NOTIFY_CHANNEL, self._on_notify)
        self._listener.add_termination_listener(self._on_listener_lost)
        log.info("[db] pool ready → %s", self.dsn.split("@")[-1])

    async def close(self) -> None:
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _on_notify(self, _con, _pid, _channel, payload: str) -> None:
        try:
            change = decode_change(payload)
        except (ValueError, KeyError):
            log.warning("dropping malformed notification: %.200s", payload)
            return
        self.changes.publish(change)

    def _on_listener_lost(self, _con) -> None:
        self.changes.fail(ConnectionError("LISTEN connection closed"))

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[Any]:
        async with self.pool.acquire() as con:
            yield con

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[Any]:
        async with self.pool.acquire() as con:
            async with con.transaction():
                yield con

    async def _fetch(self, con, sql: str, *args) -> list:
        return await con.fetch(_pg_sql(sql), *args)

    async def _execute(self, con, sql: str, *args) -> None:
        await con.execute(_pg_sql(sql), *args)

    async def _notify(self, con, changes: Sequence[Change]) -> None:
        for change in changes:
            await con.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, encode_change(change))


async def init_db(reset: bool = False, *, use_postgres: Optional[bool] = None) -> Backend:
    """Build and initialise the configured backend."""
    if use_postgres is None:
        use_postgres = config.USE_POSTGRES
    if use_postgres:
        backend: Backend = PGBackend(config.PG_DSN, pool_min=config.PG_POOL_MIN,
                                     pool_max=config.PG_POOL_MAX, timeout=config.PG_TIMEOUT)
    else:
        backend = SQLiteBackend(config.SQLITE_PATH)
    await backend.init(reset)
    return backend
