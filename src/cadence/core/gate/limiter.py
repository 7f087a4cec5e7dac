"""Per-channel send rate limiter built on pyrate-limiter buckets.

Each channel owns one bucket with a single sliding-window rate. Where
the bucket lives follows the database of record, so every worker that
shares the database also shares the budget:

- SQLite file database: a ``SQLiteBucket`` table in the same file
- PostgreSQL database: a ``PostgresBucket`` table in the same database
- in-memory SQLite (tests): an ``InMemoryBucket`` per limiter

Items are stamped with the limiter's clock rather than the bucket's, so
tests drive windows with a fake clock.
"""

from __future__ import annotations

import random
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pyrate_limiter import (  # type: ignore[attr-defined]
    AbstractBucket,
    Duration,
    InMemoryBucket,
    PostgresBucket,
    Rate,
    RateItem,
    SQLiteBucket,
    SQLiteQueries,
)
from sqlalchemy.engine import make_url

from cadence.contracts.errors import RateLimited
from cadence.core.config import GateSettings
from cadence.core.store.database import CadenceDB

if TYPE_CHECKING:
    from psycopg_pool import ConnectionPool

Clock = Callable[[], datetime]

# Seconds a SQLite bucket write waits for another worker's lock
_SQLITE_TIMEOUT_SECONDS = 5.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _bucket_table(channel: str) -> str:
    return f"ratelimit_{channel}"


class ChannelRateLimiter:
    """Caps sends per channel within a sliding window.

    Exhaustion is reported as a ``RateLimited`` scheduling signal carrying
    the bucket's wait until a slot frees plus jitter, so the caller
    re-queues the send instead of dropping it.

    Example:
        limiter = ChannelRateLimiter(db, settings.gate)

        try:
            limiter.acquire("email")
        except RateLimited as signal:
            queue.requeue(task_id, delay=signal.retry_after)
    """

    def __init__(
        self,
        db: CadenceDB,
        settings: GateSettings,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock or _utcnow
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._buckets: dict[str, AbstractBucket] = {}
        self._conn: sqlite3.Connection | None = None
        self._pool: ConnectionPool | None = None

        url = make_url(db.url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            self._conn = sqlite3.connect(
                url.database, timeout=_SQLITE_TIMEOUT_SECONDS, check_same_thread=False
            )
        elif url.get_backend_name() == "postgresql":
            from psycopg_pool import ConnectionPool

            conninfo = url.set(drivername="postgresql").render_as_string(hide_password=False)
            self._pool = ConnectionPool(conninfo, min_size=1, max_size=4, open=True)

    def _bucket(self, channel: str) -> AbstractBucket:
        bucket = self._buckets.get(channel)
        if bucket is not None:
            return bucket

        limit = self._settings.limit_for(channel)
        rates = [Rate(limit.per_window, Duration.SECOND * limit.window_seconds)]
        table = _bucket_table(channel)
        if self._conn is not None:
            self._conn.execute(SQLiteQueries.CREATE_BUCKET_TABLE.format(table=table))
            self._conn.commit()
            bucket = SQLiteBucket(rates=rates, conn=self._conn, table=table)
        elif self._pool is not None:
            bucket = PostgresBucket(pool=self._pool, table=table, rates=rates)
        else:
            bucket = InMemoryBucket(rates=rates)
        self._buckets[channel] = bucket
        return bucket

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def _put(self, channel: str) -> int | None:
        """Take one slot. None when admitted, else milliseconds until one frees."""
        with self._lock:
            bucket = self._bucket(channel)
            item = RateItem(channel, self._now_ms())
            bucket.leak(item.timestamp)
            if bucket.put(item):
                return None
            return max(int(bucket.waiting(item)), 0)

    def try_acquire(self, channel: str) -> bool:
        """Take one send slot if the window has room."""
        return self._put(channel) is None

    def acquire(self, channel: str) -> None:
        """Take one send slot or raise ``RateLimited``.

        Raises:
            RateLimited: With retry_after = wait until a slot frees + jitter (>= 1s)
        """
        wait_ms = self._put(channel)
        if wait_ms is None:
            return
        jitter = self._rng.uniform(0, self._settings.max_jitter_seconds)
        raise RateLimited(channel, max(1.0, wait_ms / 1000 + jitter))

    def used(self, channel: str) -> int:
        """Sends counted in the current window."""
        with self._lock:
            bucket = self._bucket(channel)
            bucket.leak(self._now_ms())
            return int(bucket.count())

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        if self._pool is not None:
            self._pool.close()
            self._pool = None
        self._buckets.clear()

    def __enter__(self) -> ChannelRateLimiter:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
