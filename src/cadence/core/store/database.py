# src/cadence/core/store/database.py
"""Database connection management for the database of record.

Every worker process, the scheduler and the CLI share one database: the
executions, stage runs and send records live there, and so do the task
queue and the channel gate counters. SQLite serves development and
tests; PostgreSQL is the production backend.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Self

from sqlalchemy import Connection, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from cadence.core.store.schema import metadata

# Milliseconds a SQLite writer waits for the lock before erroring
_SQLITE_BUSY_TIMEOUT_MS = 5000


def _install_sqlite_pragmas(engine: Engine) -> None:
    """Apply per-connection SQLite settings.

    - journal_mode=WAL: readers don't block the single writer
    - foreign_keys=ON: SQLite leaves referential integrity off by default
    - busy_timeout: concurrent workers queue for the write lock
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: object) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


class CadenceDB:
    """Connection manager shared by the recorder, queue and channel gate.

    Build one with ``from_url`` (settings) or ``in_memory`` (tests); both
    create missing tables.

    Example:
        db = CadenceDB.from_url(settings.database.url)
        with db.connection() as conn:
            recorder.create_stage_run(..., conn=conn)
            queue.enqueue(TaskKind.SEND, payload, conn=conn)
    """

    def __init__(self, engine: Engine, url: str) -> None:
        self.url = url
        self._engine: Engine | None = engine

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True, echo: bool = False) -> Self:
        engine = create_engine(url, echo=echo)
        if engine.dialect.name == "sqlite":
            _install_sqlite_pragmas(engine)
        if create_tables:
            metadata.create_all(engine)
        return cls(engine, url)

    @classmethod
    def in_memory(cls) -> Self:
        """Private in-memory SQLite database.

        One connection is shared by every caller (and thread, for the send
        pool), so the schema and data stay visible. Callers must not open a
        second transaction while one is in progress on the same thread.
        """
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _install_sqlite_pragmas(engine)
        metadata.create_all(engine)
        return cls(engine, "sqlite://")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is closed")
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def connection(self, existing: Connection | None = None) -> Iterator[Connection]:
        """A connection inside a transaction.

        Commits when the block exits cleanly and rolls back on exception.
        Passing ``existing`` joins the caller's transaction instead, so a
        state change and the tasks it enqueues commit together.
        """
        if existing is not None:
            yield existing
            return
        with self.engine.begin() as conn:
            yield conn
