# src/cadence/core/store/recorder.py
"""ExecutionRecorder: high-level API over the database of record.

This is the main interface for reading and mutating executions, stage
runs, condition results and send records. It wraps the low-level table
operations.

State transitions that workers may race on are written as conditional
UPDATEs (compare-and-set on the current status) and report whether they
won, instead of reading first and writing second.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import Connection, and_, case, func, or_, select

from cadence.contracts.enums import (
    Channel,
    DispatchMode,
    ExecutionStatus,
    NodeKind,
    SendStatus,
    StageRunStatus,
)
from cadence.core.canonical import canonical_json, stable_hash
from cadence.core.store.database import CadenceDB
from cadence.core.store.models import (
    ConditionResult,
    Execution,
    Flow,
    SendCounts,
    SendRecord,
    StageRun,
)
from cadence.core.store.repositories import (
    load_condition_result,
    load_execution,
    load_flow,
    load_send_record,
    load_stage_run,
)
from cadence.core.store.schema import (
    condition_results_table,
    executions_table,
    flows_table,
    send_records_table,
    stage_runs_table,
)

E = TypeVar("E", bound=Enum)

_ACTIVE_STAGE_STATUSES = (StageRunStatus.EXECUTING.value, StageRunStatus.BATCHING.value)
_OPEN_STAGE_STATUSES = (StageRunStatus.PENDING.value, *_ACTIVE_STAGE_STATUSES)
_TERMINAL_SEND_STATUSES = (
    SendStatus.SENT.value,
    SendStatus.FAILED.value,
    SendStatus.OPENED.value,
    SendStatus.CLICKED.value,
)


def _now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _generate_id() -> str:
    """Generate a unique ID."""
    return uuid.uuid4().hex


def _coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a string or enum value to the target enum type.

    Raises:
        ValueError: If string doesn't match any enum value

    Example:
        >>> _coerce_enum("batching", StageRunStatus)
        <StageRunStatus.BATCHING: 'batching'>
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)


class ExecutionRecorder:
    """High-level API for execution state.

    This class provides methods to record:
    - Flows and the execution snapshots taken from them
    - Executions and their next-due pointer
    - StageRuns and their dispatch progress
    - ConditionResults
    - SendRecords and engagement (opens, clicks, bounces)

    Example:
        db = CadenceDB.in_memory()
        recorder = ExecutionRecorder(db)

        flow = recorder.save_flow("welcome", "Welcome", definition)
        execution = recorder.create_execution(flow, recipient_set_id, 100)
    """

    def __init__(self, db: CadenceDB, *, clock: Callable[[], datetime] | None = None) -> None:
        """Initialize recorder with database connection.

        Args:
            db: Database connection
            clock: Source of "now" (UTC) for recorded timestamps
        """
        self._db = db
        self._clock = clock or _now

    @property
    def db(self) -> CadenceDB:
        return self._db

    # === Flows ===

    def save_flow(
        self, flow_id: str, name: str, definition: dict[str, Any]
    ) -> Flow:
        """Insert or replace a flow definition.

        Running executions are unaffected: they hold their own snapshot.
        """
        now = self._clock()
        definition_json = canonical_json(definition)
        definition_hash = stable_hash(definition)

        with self._db.connection() as conn:
            result = conn.execute(
                flows_table.update()
                .where(flows_table.c.flow_id == flow_id)
                .values(
                    name=name,
                    definition_json=definition_json,
                    definition_hash=definition_hash,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                conn.execute(
                    flows_table.insert().values(
                        flow_id=flow_id,
                        name=name,
                        definition_json=definition_json,
                        definition_hash=definition_hash,
                        created_at=now,
                        updated_at=now,
                    )
                )

        return self.get_flow(flow_id)  # type: ignore[return-value]

    def get_flow(self, flow_id: str) -> Flow | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(flows_table).where(flows_table.c.flow_id == flow_id)
            ).fetchone()
        return load_flow(row) if row is not None else None

    # === Executions ===

    def create_execution(
        self,
        flow: Flow,
        recipient_set_id: str,
        recipient_count: int,
        *,
        conn: Connection | None = None,
    ) -> Execution:
        """Create an execution in ``pending`` with a snapshot of the flow."""
        execution = Execution(
            execution_id=_generate_id(),
            flow_id=flow.flow_id,
            flow_snapshot=flow.definition,
            flow_snapshot_hash=flow.definition_hash,
            status=ExecutionStatus.PENDING,
            recipient_set_id=recipient_set_id,
            recipient_count=recipient_count,
            created_at=self._clock(),
        )
        with self._db.connection(conn) as c:
            c.execute(
                executions_table.insert().values(
                    execution_id=execution.execution_id,
                    flow_id=execution.flow_id,
                    flow_snapshot_json=canonical_json(execution.flow_snapshot),
                    flow_snapshot_hash=execution.flow_snapshot_hash,
                    status=execution.status.value,
                    recipient_set_id=execution.recipient_set_id,
                    recipient_count=execution.recipient_count,
                    created_at=execution.created_at,
                )
            )
        return execution

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(executions_table).where(
                    executions_table.c.execution_id == execution_id
                )
            ).fetchone()
        return load_execution(row) if row is not None else None

    def list_due_executions(self, now: datetime, *, limit: int = 500) -> list[Execution]:
        """In-progress executions whose next node is due at or before ``now``."""
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                select(executions_table)
                .where(executions_table.c.status == ExecutionStatus.IN_PROGRESS.value)
                .where(executions_table.c.next_due_at <= now)
                .order_by(executions_table.c.next_due_at)
                .limit(limit)
            ).fetchall()
        return [load_execution(row) for row in rows]

    def start_execution(
        self,
        execution_id: str,
        *,
        next_node_id: str,
        next_due_at: datetime,
        conn: Connection | None = None,
    ) -> None:
        with self._db.connection(conn) as c:
            c.execute(
                executions_table.update()
                .where(executions_table.c.execution_id == execution_id)
                .where(executions_table.c.status == ExecutionStatus.PENDING.value)
                .values(
                    status=ExecutionStatus.IN_PROGRESS.value,
                    started_at=self._clock(),
                    next_node_id=next_node_id,
                    next_due_at=next_due_at,
                )
            )

    def set_next_due(
        self,
        execution_id: str,
        *,
        next_node_id: str | None,
        next_due_at: datetime | None,
        current_node_id: str | None = None,
        conn: Connection | None = None,
    ) -> None:
        """Persist the execution's next-due pointer (only while in progress)."""
        values: dict[str, Any] = {
            "next_node_id": next_node_id,
            "next_due_at": next_due_at,
        }
        if current_node_id is not None:
            values["current_node_id"] = current_node_id
        with self._db.connection(conn) as c:
            c.execute(
                executions_table.update()
                .where(executions_table.c.execution_id == execution_id)
                .where(executions_table.c.status == ExecutionStatus.IN_PROGRESS.value)
                .values(**values)
            )

    def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus | str,
        *,
        reason: str | None = None,
        conn: Connection | None = None,
    ) -> bool:
        """Move a non-terminal execution to a terminal status.

        Returns:
            True if this call made the transition
        """
        status_enum = _coerce_enum(status, ExecutionStatus)
        if not status_enum.is_terminal:
            raise ValueError(f"Not a terminal execution status: {status_enum.value}")
        with self._db.connection(conn) as c:
            result = c.execute(
                executions_table.update()
                .where(executions_table.c.execution_id == execution_id)
                .where(
                    executions_table.c.status.in_(
                        [ExecutionStatus.PENDING.value, ExecutionStatus.IN_PROGRESS.value]
                    )
                )
                .values(
                    status=status_enum.value,
                    failure_reason=reason,
                    next_node_id=None,
                    next_due_at=None,
                    completed_at=self._clock(),
                )
            )
        return bool(result.rowcount)

    # === Stage Runs ===

    def schedule_stage_run(
        self,
        execution_id: str,
        node_id: str,
        node_kind: NodeKind | str,
        *,
        origin: str,
        recipient_set_id: str,
        expected_count: int,
        scheduled_at: datetime,
        source_stage_run_id: str | None = None,
        conn: Connection | None = None,
    ) -> StageRun:
        """Create a pending StageRun, or return the one already on this path.

        (execution, node, origin) identifies a StageRun, so scheduling the
        same successor twice after a crash is harmless.
        """
        kind = _coerce_enum(node_kind, NodeKind)
        with self._db.connection(conn) as c:
            existing = c.execute(
                select(stage_runs_table)
                .where(stage_runs_table.c.execution_id == execution_id)
                .where(stage_runs_table.c.node_id == node_id)
                .where(stage_runs_table.c.origin == origin)
            ).fetchone()
            if existing is not None:
                return load_stage_run(existing)

            stage_run = StageRun(
                stage_run_id=_generate_id(),
                execution_id=execution_id,
                node_id=node_id,
                node_kind=kind,
                origin=origin,
                status=StageRunStatus.PENDING,
                recipient_set_id=recipient_set_id,
                expected_count=expected_count,
                scheduled_at=scheduled_at,
                source_stage_run_id=source_stage_run_id,
            )
            c.execute(
                stage_runs_table.insert().values(
                    stage_run_id=stage_run.stage_run_id,
                    execution_id=execution_id,
                    node_id=node_id,
                    node_kind=kind.value,
                    origin=origin,
                    status=stage_run.status.value,
                    recipient_set_id=recipient_set_id,
                    expected_count=expected_count,
                    scheduled_at=scheduled_at,
                    source_stage_run_id=source_stage_run_id,
                    chunks_total=0,
                    chunks_dispatched=0,
                    chunks_completed=0,
                    skipped_count=0,
                    cancelled=False,
                    recovered=False,
                )
            )
        return stage_run

    def get_stage_run(self, stage_run_id: str) -> StageRun | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(stage_runs_table).where(
                    stage_runs_table.c.stage_run_id == stage_run_id
                )
            ).fetchone()
        return load_stage_run(row) if row is not None else None

    def list_stage_runs(
        self,
        execution_id: str,
        *,
        statuses: tuple[StageRunStatus, ...] | None = None,
    ) -> list[StageRun]:
        """StageRuns of an execution ordered by schedule time."""
        query = select(stage_runs_table).where(
            stage_runs_table.c.execution_id == execution_id
        )
        if statuses is not None:
            query = query.where(
                stage_runs_table.c.status.in_([s.value for s in statuses])
            )
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                query.order_by(stage_runs_table.c.scheduled_at)
            ).fetchall()
        return [load_stage_run(row) for row in rows]

    def open_stage_runs(self, execution_id: str) -> list[StageRun]:
        """Pending, executing and batching StageRuns of an execution."""
        return self.list_stage_runs(
            execution_id,
            statuses=(
                StageRunStatus.PENDING,
                StageRunStatus.EXECUTING,
                StageRunStatus.BATCHING,
            ),
        )

    def claim_stage_run(
        self, stage_run_id: str, status: StageRunStatus | str
    ) -> bool:
        """Move a pending StageRun to executing/batching.

        Returns:
            True if this caller won the claim
        """
        status_enum = _coerce_enum(status, StageRunStatus)
        if not status_enum.is_active:
            raise ValueError(f"Cannot claim into status {status_enum.value}")
        now = self._clock()
        with self._db.connection() as conn:
            result = conn.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.stage_run_id == stage_run_id)
                .where(stage_runs_table.c.status == StageRunStatus.PENDING.value)
                .values(status=status_enum.value, started_at=now, progress_updated_at=now)
            )
        return bool(result.rowcount)

    def begin_dispatch(
        self,
        stage_run_id: str,
        *,
        status: StageRunStatus,
        mode: DispatchMode,
        batch_id: str,
        content: dict[str, Any],
        chunks_total: int,
        conn: Connection | None = None,
    ) -> None:
        """Record how a claimed send StageRun is being dispatched."""
        with self._db.connection(conn) as c:
            c.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.stage_run_id == stage_run_id)
                .values(
                    status=status.value,
                    mode=mode.value,
                    batch_id=batch_id,
                    content_json=json.dumps(content),
                    chunks_total=chunks_total,
                    progress_updated_at=self._clock(),
                )
            )

    def record_chunk_dispatched(
        self,
        stage_run_id: str,
        *,
        skipped: int,
        conn: Connection | None = None,
    ) -> None:
        """Atomically bump the dispatched-chunk and skipped-recipient counters."""
        with self._db.connection(conn) as c:
            c.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.stage_run_id == stage_run_id)
                .values(
                    chunks_dispatched=stage_runs_table.c.chunks_dispatched + 1,
                    skipped_count=stage_runs_table.c.skipped_count + skipped,
                    progress_updated_at=self._clock(),
                )
            )

    def record_chunks_completed(self, stage_run_id: str, chunks_completed: int) -> None:
        with self._db.connection() as conn:
            conn.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.stage_run_id == stage_run_id)
                .values(chunks_completed=chunks_completed, progress_updated_at=self._clock())
            )

    def complete_stage_run(
        self,
        stage_run_id: str,
        *,
        recovered: bool = False,
        conn: Connection | None = None,
    ) -> bool:
        """Move an active StageRun to completed. Completed StageRuns never change.

        Returns:
            True if this call made the transition
        """
        now = self._clock()
        values: dict[str, Any] = {
            "status": StageRunStatus.COMPLETED.value,
            "completed_at": now,
            "progress_updated_at": now,
        }
        if recovered:
            values["recovered"] = True
        with self._db.connection(conn) as c:
            result = c.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.stage_run_id == stage_run_id)
                .where(stage_runs_table.c.status.in_(_ACTIVE_STAGE_STATUSES))
                .values(**values)
            )
        return bool(result.rowcount)

    def fail_stage_run(
        self,
        stage_run_id: str,
        error: str,
        *,
        recovered: bool = False,
        conn: Connection | None = None,
    ) -> bool:
        """Move an open (pending or active) StageRun to failed."""
        now = self._clock()
        with self._db.connection(conn) as c:
            result = c.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.stage_run_id == stage_run_id)
                .where(stage_runs_table.c.status.in_(_OPEN_STAGE_STATUSES))
                .values(
                    status=StageRunStatus.FAILED.value,
                    error=error,
                    completed_at=now,
                    progress_updated_at=now,
                    recovered=recovered,
                )
            )
        return bool(result.rowcount)

    def cancel_open_stage_runs(
        self,
        execution_id: str,
        *,
        error: str = "execution cancelled",
        conn: Connection | None = None,
    ) -> int:
        """Flag open StageRuns cancelled; pending ones fail outright.

        Active StageRuns keep running so their in-flight send tasks can
        observe the flag and no-op.
        """
        now = self._clock()
        with self._db.connection(conn) as c:
            c.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.execution_id == execution_id)
                .where(stage_runs_table.c.status.in_(_ACTIVE_STAGE_STATUSES))
                .values(cancelled=True, progress_updated_at=now)
            )
            result = c.execute(
                stage_runs_table.update()
                .where(stage_runs_table.c.execution_id == execution_id)
                .where(stage_runs_table.c.status == StageRunStatus.PENDING.value)
                .values(
                    status=StageRunStatus.FAILED.value,
                    cancelled=True,
                    error=error,
                    completed_at=now,
                )
            )
        return int(result.rowcount)

    def list_stale_stage_runs(
        self,
        now: datetime,
        *,
        stale_after: timedelta,
        stale_chunked_after: timedelta,
        limit: int = 500,
    ) -> list[StageRun]:
        """Active StageRuns with no progress within their staleness threshold."""
        last_activity = func.coalesce(
            stage_runs_table.c.progress_updated_at,
            stage_runs_table.c.started_at,
            stage_runs_table.c.scheduled_at,
        )
        chunked = stage_runs_table.c.mode == DispatchMode.LARGE_VOLUME_CHUNKED.value
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                select(stage_runs_table)
                .join(
                    executions_table,
                    executions_table.c.execution_id == stage_runs_table.c.execution_id,
                )
                .where(stage_runs_table.c.status.in_(_ACTIVE_STAGE_STATUSES))
                .where(
                    or_(
                        and_(chunked, last_activity <= now - stale_chunked_after),
                        and_(
                            or_(~chunked, stage_runs_table.c.mode.is_(None)),
                            last_activity <= now - stale_after,
                        ),
                    )
                )
                .order_by(last_activity)
                .limit(limit)
            ).fetchall()
        return [load_stage_run(row) for row in rows]

    # === Condition Results ===

    def record_condition_result(
        self,
        stage_run_id: str,
        *,
        yes_set_id: str,
        no_set_id: str,
        evaluated_count: int,
        yes_count: int,
        no_count: int,
        no_record_count: int,
        metric_snapshot: dict[str, Any],
        conn: Connection | None = None,
    ) -> ConditionResult:
        result = ConditionResult(
            condition_result_id=_generate_id(),
            stage_run_id=stage_run_id,
            yes_set_id=yes_set_id,
            no_set_id=no_set_id,
            evaluated_count=evaluated_count,
            yes_count=yes_count,
            no_count=no_count,
            no_record_count=no_record_count,
            metric_snapshot=metric_snapshot,
            evaluated_at=self._clock(),
        )
        with self._db.connection(conn) as c:
            c.execute(
                condition_results_table.insert().values(
                    condition_result_id=result.condition_result_id,
                    stage_run_id=stage_run_id,
                    yes_set_id=yes_set_id,
                    no_set_id=no_set_id,
                    evaluated_count=evaluated_count,
                    yes_count=yes_count,
                    no_count=no_count,
                    no_record_count=no_record_count,
                    metric_snapshot_json=json.dumps(metric_snapshot, sort_keys=True),
                    evaluated_at=result.evaluated_at,
                )
            )
        return result

    def get_condition_result(self, stage_run_id: str) -> ConditionResult | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(condition_results_table).where(
                    condition_results_table.c.stage_run_id == stage_run_id
                )
            ).fetchone()
        return load_condition_result(row) if row is not None else None

    # === Send Records ===

    def find_send_records(
        self,
        stage_run_id: str,
        recipient_ids: list[str],
        *,
        conn: Connection | None = None,
    ) -> dict[str, SendRecord]:
        """Existing records for some recipients of a StageRun, keyed by recipient."""
        if not recipient_ids:
            return {}
        with self._db.connection(conn) as c:
            rows = c.execute(
                select(send_records_table)
                .where(send_records_table.c.stage_run_id == stage_run_id)
                .where(send_records_table.c.recipient_id.in_(recipient_ids))
            ).fetchall()
        return {row.recipient_id: load_send_record(row) for row in rows}

    def get_send_record(self, send_record_id: str) -> SendRecord | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(send_records_table).where(
                    send_records_table.c.send_record_id == send_record_id
                )
            ).fetchone()
        return load_send_record(row) if row is not None else None

    def create_pending_send(
        self,
        stage_run_id: str,
        recipient_id: str,
        *,
        channel: Channel,
        destination: str,
        chunk_index: int,
        conn: Connection,
    ) -> str:
        """Insert a pending SendRecord inside the caller's transaction."""
        now = self._clock()
        send_record_id = _generate_id()
        conn.execute(
            send_records_table.insert().values(
                send_record_id=send_record_id,
                stage_run_id=stage_run_id,
                recipient_id=recipient_id,
                channel=channel.value,
                destination=destination,
                status=SendStatus.PENDING.value,
                chunk_index=chunk_index,
                attempts=0,
                bounced=False,
                open_count=0,
                click_count=0,
                created_at=now,
                updated_at=now,
            )
        )
        return send_record_id

    def reset_failed_send(self, send_record_id: str, *, conn: Connection) -> bool:
        """Put a failed record back to pending for a fresh dispatch (never re-created)."""
        result = conn.execute(
            send_records_table.update()
            .where(send_records_table.c.send_record_id == send_record_id)
            .where(send_records_table.c.status == SendStatus.FAILED.value)
            .values(
                status=SendStatus.PENDING.value,
                attempts=0,
                error=None,
                updated_at=self._clock(),
            )
        )
        return bool(result.rowcount)

    def record_send_attempt(self, send_record_id: str) -> int:
        """Increment and return the record's attempt counter."""
        with self._db.connection() as conn:
            conn.execute(
                send_records_table.update()
                .where(send_records_table.c.send_record_id == send_record_id)
                .values(attempts=send_records_table.c.attempts + 1, updated_at=self._clock())
            )
            return int(
                conn.execute(
                    select(send_records_table.c.attempts).where(
                        send_records_table.c.send_record_id == send_record_id
                    )
                ).scalar_one()
            )

    def mark_sent(self, send_record_id: str, provider_message_id: str | None) -> bool:
        now = self._clock()
        with self._db.connection() as conn:
            result = conn.execute(
                send_records_table.update()
                .where(send_records_table.c.send_record_id == send_record_id)
                .where(send_records_table.c.status == SendStatus.PENDING.value)
                .values(
                    status=SendStatus.SENT.value,
                    provider_message_id=provider_message_id,
                    error=None,
                    sent_at=now,
                    updated_at=now,
                )
            )
        return bool(result.rowcount)

    def mark_send_failed(self, send_record_id: str, error: str) -> bool:
        with self._db.connection() as conn:
            result = conn.execute(
                send_records_table.update()
                .where(send_records_table.c.send_record_id == send_record_id)
                .where(send_records_table.c.status == SendStatus.PENDING.value)
                .values(status=SendStatus.FAILED.value, error=error, updated_at=self._clock())
            )
        return bool(result.rowcount)

    def fail_orphaned_sends(self, stage_run_id: str, error: str) -> int:
        """Fail every still-pending record of a StageRun. Returns how many."""
        with self._db.connection() as conn:
            result = conn.execute(
                send_records_table.update()
                .where(send_records_table.c.stage_run_id == stage_run_id)
                .where(send_records_table.c.status == SendStatus.PENDING.value)
                .values(status=SendStatus.FAILED.value, error=error, updated_at=self._clock())
            )
        return int(result.rowcount)

    def record_open(self, send_record_id: str) -> bool:
        """Register an open: first timestamp wins, count grows, status never demotes."""
        now = self._clock()
        table = send_records_table
        with self._db.connection() as conn:
            result = conn.execute(
                table.update()
                .where(table.c.send_record_id == send_record_id)
                .where(
                    table.c.status.in_(
                        [SendStatus.SENT.value, SendStatus.OPENED.value, SendStatus.CLICKED.value]
                    )
                )
                .values(
                    open_count=table.c.open_count + 1,
                    opened_at=func.coalesce(table.c.opened_at, now),
                    status=case(
                        (table.c.status == SendStatus.SENT.value, SendStatus.OPENED.value),
                        else_=table.c.status,
                    ),
                    updated_at=now,
                )
            )
        return bool(result.rowcount)

    def record_click(self, send_record_id: str) -> bool:
        """Register a click. A click implies an open."""
        now = self._clock()
        table = send_records_table
        with self._db.connection() as conn:
            result = conn.execute(
                table.update()
                .where(table.c.send_record_id == send_record_id)
                .where(
                    table.c.status.in_(
                        [SendStatus.SENT.value, SendStatus.OPENED.value, SendStatus.CLICKED.value]
                    )
                )
                .values(
                    click_count=table.c.click_count + 1,
                    clicked_at=func.coalesce(table.c.clicked_at, now),
                    opened_at=func.coalesce(table.c.opened_at, now),
                    open_count=case(
                        (table.c.open_count == 0, 1),
                        else_=table.c.open_count,
                    ),
                    status=SendStatus.CLICKED.value,
                    updated_at=now,
                )
            )
        return bool(result.rowcount)

    def record_bounce(self, send_record_id: str, error: str = "bounced") -> bool:
        with self._db.connection() as conn:
            result = conn.execute(
                send_records_table.update()
                .where(send_records_table.c.send_record_id == send_record_id)
                .values(
                    bounced=True,
                    status=SendStatus.FAILED.value,
                    error=error,
                    updated_at=self._clock(),
                )
            )
        return bool(result.rowcount)

    def count_sends(self, stage_run_id: str) -> SendCounts:
        """Terminal vs pending SendRecords for a StageRun."""
        pending_expr = func.sum(
            case((send_records_table.c.status == SendStatus.PENDING.value, 1), else_=0)
        )
        terminal_expr = func.sum(
            case(
                (send_records_table.c.status.in_(_TERMINAL_SEND_STATUSES), 1),
                else_=0,
            )
        )
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(terminal_expr.label("terminal"), pending_expr.label("pending"))
                .where(send_records_table.c.stage_run_id == stage_run_id)
            ).one()
        return SendCounts(terminal=int(row.terminal or 0), pending=int(row.pending or 0))

    def pending_by_chunk(self, stage_run_id: str) -> dict[int, int]:
        """Pending record count per chunk index (chunks with records only)."""
        pending_expr = func.sum(
            case((send_records_table.c.status == SendStatus.PENDING.value, 1), else_=0)
        )
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                select(send_records_table.c.chunk_index, pending_expr.label("pending"))
                .where(send_records_table.c.stage_run_id == stage_run_id)
                .group_by(send_records_table.c.chunk_index)
            ).fetchall()
        return {row.chunk_index: int(row.pending or 0) for row in rows}

    def list_send_records(self, stage_run_id: str) -> list[SendRecord]:
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                select(send_records_table)
                .where(send_records_table.c.stage_run_id == stage_run_id)
                .order_by(send_records_table.c.created_at)
            ).fetchall()
        return [load_send_record(row) for row in rows]
