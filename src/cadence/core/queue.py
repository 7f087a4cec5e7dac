# src/cadence/core/queue.py
"""Durable work queue on the database of record.

Every deferred action in the engine is a row here with an
``eligible_at`` timestamp: waiting for a rate-limit window, a circuit
cooldown, a retry backoff or a stage completion poll is always a
re-queue with delay, never a sleep inside a worker.

Delivery is at-least-once. A claimed task holds a lease; if the worker
dies the lease expires and another worker picks the task up again, so
handlers must be idempotent.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Connection, and_, func, or_, select

from cadence.contracts.enums import TaskKind, TaskStatus
from cadence.core.store.database import CadenceDB
from cadence.core.store.models import Task
from cadence.core.store.repositories import load_task
from cadence.core.store.schema import tasks_table

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TaskHandle:
    """Reference to an enqueued task."""

    task_id: str
    kind: TaskKind
    eligible_at: datetime


class WorkQueue:
    """Persistent queue of delayed tasks.

    Example:
        queue = WorkQueue(db)
        queue.enqueue(TaskKind.SEND, {"send_record_id": "abc"}, delay=30)

        task = queue.dequeue()
        if task is not None:
            handle(task)
            queue.complete(task.task_id)
    """

    def __init__(
        self,
        db: CadenceDB,
        *,
        lease_seconds: int = 300,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            db: Database holding the tasks table
            lease_seconds: How long a claimed task stays invisible to others
            clock: Source of "now" (UTC); defaults to the wall clock
        """
        self._db = db
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock or _utcnow

    def enqueue(
        self,
        kind: TaskKind,
        payload: dict[str, Any],
        *,
        delay: float = 0,
        stage_run_id: str | None = None,
        conn: Connection | None = None,
    ) -> TaskHandle:
        """Add a task that becomes eligible after ``delay`` seconds.

        Pass ``conn`` to enqueue inside the caller's transaction, so the task
        commits (or rolls back) together with the state change it belongs to.
        """
        now = self._clock()
        eligible_at = now + timedelta(seconds=max(delay, 0))
        task_id = uuid.uuid4().hex
        with self._db.connection(conn) as c:
            c.execute(
                tasks_table.insert().values(
                    task_id=task_id,
                    kind=kind.value,
                    payload_json=json.dumps(payload, sort_keys=True),
                    status=TaskStatus.QUEUED.value,
                    stage_run_id=stage_run_id,
                    eligible_at=eligible_at,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return TaskHandle(task_id=task_id, kind=kind, eligible_at=eligible_at)

    def enqueue_many(
        self,
        kind: TaskKind,
        payloads: list[dict[str, Any]],
        *,
        delay: float = 0,
        stage_run_id: str | None = None,
        conn: Connection | None = None,
    ) -> int:
        """Bulk variant of ``enqueue`` for dispatching a batch in one statement."""
        if not payloads:
            return 0
        now = self._clock()
        eligible_at = now + timedelta(seconds=max(delay, 0))
        rows = [
            {
                "task_id": uuid.uuid4().hex,
                "kind": kind.value,
                "payload_json": json.dumps(payload, sort_keys=True),
                "status": TaskStatus.QUEUED.value,
                "stage_run_id": stage_run_id,
                "eligible_at": eligible_at,
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
            for payload in payloads
        ]
        with self._db.connection(conn) as c:
            c.execute(tasks_table.insert(), rows)
        return len(rows)

    def _claimable(self, now: datetime) -> Any:
        return or_(
            and_(
                tasks_table.c.status == TaskStatus.QUEUED.value,
                tasks_table.c.eligible_at <= now,
            ),
            and_(
                tasks_table.c.status == TaskStatus.RUNNING.value,
                tasks_table.c.lease_expires_at <= now,
            ),
        )

    def claim_due(self, limit: int) -> list[Task]:
        """Claim up to ``limit`` eligible tasks, oldest first.

        Each claim is a conditional UPDATE, so two workers racing for the
        same task cannot both win it.
        """
        now = self._clock()
        with self._db.engine.connect() as conn:
            candidate_ids = list(
                conn.execute(
                    select(tasks_table.c.task_id)
                    .where(self._claimable(now))
                    .order_by(tasks_table.c.eligible_at, tasks_table.c.created_at)
                    .limit(limit)
                ).scalars()
            )

        claimed: list[Task] = []
        for task_id in candidate_ids:
            with self._db.connection() as conn:
                result = conn.execute(
                    tasks_table.update()
                    .where(tasks_table.c.task_id == task_id)
                    .where(self._claimable(now))
                    .values(
                        status=TaskStatus.RUNNING.value,
                        lease_expires_at=now + self._lease,
                        attempts=tasks_table.c.attempts + 1,
                        updated_at=now,
                    )
                )
                if result.rowcount:
                    row = conn.execute(
                        select(tasks_table).where(tasks_table.c.task_id == task_id)
                    ).one()
                    claimed.append(load_task(row))
        return claimed

    def dequeue(self) -> Task | None:
        """Claim the single oldest eligible task, if any."""
        tasks = self.claim_due(1)
        return tasks[0] if tasks else None

    def complete(self, task_id: str, *, conn: Connection | None = None) -> None:
        """Mark a task done. Pass ``conn`` to commit it with the work it performed."""
        self._finish(task_id, TaskStatus.DONE, error=None, conn=conn)

    def fail(self, task_id: str, error: str) -> None:
        """Park a task that raised unexpectedly; it is not retried."""
        self._finish(task_id, TaskStatus.FAILED, error=error)

    def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error: str | None,
        conn: Connection | None = None,
    ) -> None:
        with self._db.connection(conn) as c:
            c.execute(
                tasks_table.update()
                .where(tasks_table.c.task_id == task_id)
                .values(
                    status=status.value,
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=self._clock(),
                )
            )

    def requeue(
        self,
        task_id: str,
        *,
        delay: float,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> TaskHandle:
        """Release a claimed task back to the queue after ``delay`` seconds."""
        now = self._clock()
        eligible_at = now + timedelta(seconds=max(delay, 0))
        values: dict[str, Any] = {
            "status": TaskStatus.QUEUED.value,
            "eligible_at": eligible_at,
            "lease_expires_at": None,
            "last_error": error,
            "updated_at": now,
        }
        if payload is not None:
            values["payload_json"] = json.dumps(payload, sort_keys=True)
        with self._db.connection() as conn:
            conn.execute(
                tasks_table.update().where(tasks_table.c.task_id == task_id).values(**values)
            )
            kind = conn.execute(
                select(tasks_table.c.kind).where(tasks_table.c.task_id == task_id)
            ).scalar_one()
        return TaskHandle(task_id=task_id, kind=TaskKind(kind), eligible_at=eligible_at)

    def purge_done(self, *, older_than: timedelta) -> int:
        """Delete done tasks last touched more than ``older_than`` ago.

        Failed tasks are kept for inspection. Returns the number deleted.
        """
        cutoff = self._clock() - older_than
        with self._db.connection() as conn:
            result = conn.execute(
                tasks_table.delete()
                .where(tasks_table.c.status == TaskStatus.DONE.value)
                .where(tasks_table.c.updated_at < cutoff)
            )
        return result.rowcount

    def get(self, task_id: str) -> Task | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(tasks_table).where(tasks_table.c.task_id == task_id)
            ).fetchone()
        return load_task(row) if row is not None else None

    def count_open(
        self,
        *,
        stage_run_id: str | None = None,
        kinds: tuple[TaskKind, ...] | None = None,
    ) -> int:
        """Tasks still queued or running, optionally for one StageRun and kinds."""
        query = (
            select(func.count())
            .select_from(tasks_table)
            .where(
                tasks_table.c.status.in_(
                    [TaskStatus.QUEUED.value, TaskStatus.RUNNING.value]
                )
            )
        )
        if stage_run_id is not None:
            query = query.where(tasks_table.c.stage_run_id == stage_run_id)
        if kinds is not None:
            query = query.where(tasks_table.c.kind.in_([k.value for k in kinds]))
        with self._db.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def list_open(self, *, kind: TaskKind | None = None) -> list[Task]:
        query = select(tasks_table).where(
            tasks_table.c.status.in_([TaskStatus.QUEUED.value, TaskStatus.RUNNING.value])
        )
        if kind is not None:
            query = query.where(tasks_table.c.kind == kind.value)
        with self._db.engine.connect() as conn:
            rows = conn.execute(query.order_by(tasks_table.c.eligible_at)).fetchall()
        return [load_task(row) for row in rows]
