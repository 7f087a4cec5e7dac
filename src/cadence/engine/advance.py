# src/cadence/engine/advance.py
"""Advancing an execution through its flow graph.

The advancer owns every StageRun terminal transition and what follows
from it: scheduling successor StageRuns, failing the execution when a
stage fails, and keeping the execution's next-due pointer current. The
scheduler tick, the completion check task and the recovery sweeper all
finish stages through here, so there is exactly one "advance to next
node" path.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cadence.contracts.enums import (
    Branch,
    DispatchMode,
    ExecutionStatus,
    StageOutcome,
    StageRunStatus,
)
from cadence.core.config import SchedulerSettings
from cadence.core.flow import ConditionNode, FlowGraph, SendNode
from cadence.core.logging import get_logger
from cadence.core.store.models import ConditionResult, Execution, StageRun
from cadence.core.store.recorder import ExecutionRecorder
from cadence.engine.completion import StageCompletionPolicy

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StageAdvancer:
    """Finishes StageRuns and moves executions forward.

    Terminal transitions are compare-and-set, so when two callers race to
    finish the same StageRun (completion task and recovery sweep, say)
    only the winner schedules successors.
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        settings: SchedulerSettings,
        *,
        policy: StageCompletionPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._recorder = recorder
        self._settings = settings
        self._policy = policy or StageCompletionPolicy()
        self._clock = clock or _utcnow
        self._graphs: dict[str, FlowGraph] = {}

    @property
    def policy(self) -> StageCompletionPolicy:
        return self._policy

    def graph_for(self, execution: Execution) -> FlowGraph:
        """Flow graph of an execution's snapshot (cached by snapshot hash).

        Raises:
            GraphIntegrityError: If the snapshot no longer validates
        """
        key = execution.flow_snapshot_hash
        if key not in self._graphs:
            self._graphs[key] = FlowGraph.from_definition(
                execution.flow_snapshot, flow_id=execution.flow_id
            )
        return self._graphs[key]

    def staleness_threshold(self, stage_run: StageRun) -> timedelta:
        if stage_run.mode is DispatchMode.LARGE_VOLUME_CHUNKED:
            return timedelta(minutes=self._settings.stale_chunked_after_minutes)
        return timedelta(minutes=self._settings.stale_after_minutes)

    # === Send stages ===

    def check_send_stage(self, stage_run_id: str) -> StageOutcome:
        """Apply the completion policy to a send StageRun's records.

        Returns the outcome; COMPLETE and FAILED have already been acted on
        when this returns, STILL_RUNNING means check again later.
        """
        stage_run = self._recorder.get_stage_run(stage_run_id)
        if stage_run is None:
            raise KeyError(f"StageRun not found: {stage_run_id}")
        if stage_run.status is StageRunStatus.COMPLETED:
            return StageOutcome.COMPLETE
        if stage_run.status is StageRunStatus.FAILED:
            return StageOutcome.FAILED
        if stage_run.cancelled:
            self.fail_stage(stage_run, "stage cancelled")
            return StageOutcome.FAILED

        self._update_chunk_progress(stage_run)
        if not stage_run.all_chunks_dispatched:
            return StageOutcome.STILL_RUNNING

        counts = self._recorder.count_sends(stage_run_id)
        outcome = self._policy.decide(
            stage_run.expected_count, counts.terminal, counts.pending
        )
        if outcome is StageOutcome.COMPLETE:
            self.complete_send_stage(stage_run)
        elif outcome is StageOutcome.FAILED:
            self.fail_stage(
                stage_run,
                completion_failure_reason(stage_run.expected_count, counts.terminal),
            )
        return outcome

    def _update_chunk_progress(self, stage_run: StageRun) -> None:
        pending = self._recorder.pending_by_chunk(stage_run.stage_run_id)
        busy_chunks = sum(1 for n in pending.values() if n > 0)
        completed = max(stage_run.chunks_dispatched - busy_chunks, 0)
        if completed != stage_run.chunks_completed:
            self._recorder.record_chunks_completed(stage_run.stage_run_id, completed)
            stage_run.chunks_completed = completed

    def complete_send_stage(self, stage_run: StageRun, *, recovered: bool = False) -> bool:
        """Complete a send StageRun and schedule the node after it."""
        execution = self._require_execution(stage_run.execution_id)
        graph = self.graph_for(execution)
        node = graph.node(stage_run.node_id)
        if not isinstance(node, SendNode):
            raise TypeError(f"Node '{stage_run.node_id}' is not a send node")

        now = self._clock()
        target_id = graph.successor(node.node_id)
        with self._recorder.db.connection() as conn:
            if not self._recorder.complete_stage_run(
                stage_run.stage_run_id, recovered=recovered, conn=conn
            ):
                return False
            if (
                execution.status is ExecutionStatus.IN_PROGRESS
                and target_id is not None
                and not graph.is_end(target_id)
            ):
                target = graph.node(target_id)
                delay = node.wait_delta(self._settings.wait_time_unit)
                if isinstance(target, ConditionNode):
                    # Engagement needs time to accrue before it is read
                    delay = max(
                        delay,
                        target.observation_window(
                            self._settings.default_observation_window_hours
                        ),
                    )
                due = now + delay
                self._recorder.schedule_stage_run(
                    execution.execution_id,
                    target_id,
                    target.kind,
                    origin=f"{stage_run.stage_run_id}:next",
                    recipient_set_id=stage_run.recipient_set_id,
                    expected_count=stage_run.expected_count,
                    scheduled_at=due,
                    source_stage_run_id=stage_run.stage_run_id,
                    conn=conn,
                )

        logger.info(
            "stage_completed",
            execution_id=execution.execution_id,
            stage_run_id=stage_run.stage_run_id,
            node_id=node.node_id,
            next_node_id=target_id,
            recovered=recovered,
        )
        self.refresh_execution(execution.execution_id)
        return True

    # === Condition stages ===

    def complete_condition_stage(
        self,
        stage_run: StageRun,
        result: ConditionResult,
        *,
        recovered: bool = False,
    ) -> bool:
        """Complete a condition StageRun and schedule each non-empty branch.

        A branch is scheduled only if it has recipients and an edge to a
        non-end node. If nothing is scheduled and nothing else is open the
        execution completes.
        """
        execution = self._require_execution(stage_run.execution_id)
        graph = self.graph_for(execution)
        node = graph.node(stage_run.node_id)
        if not isinstance(node, ConditionNode):
            raise TypeError(f"Node '{stage_run.node_id}' is not a condition node")

        now = self._clock()
        branches = (
            (Branch.YES, result.yes_set_id, result.yes_count),
            (Branch.NO, result.no_set_id, result.no_count),
        )
        scheduled: list[str] = []
        with self._recorder.db.connection() as conn:
            if not self._recorder.complete_stage_run(
                stage_run.stage_run_id, recovered=recovered, conn=conn
            ):
                return False
            for branch, set_id, count in branches:
                target_id = graph.branch_target(node.node_id, branch)
                if (
                    execution.status is not ExecutionStatus.IN_PROGRESS
                    or count == 0
                    or target_id is None
                    or graph.is_end(target_id)
                ):
                    continue
                target = graph.node(target_id)
                # A chained condition reads the same send records as this one
                self._recorder.schedule_stage_run(
                    execution.execution_id,
                    target_id,
                    target.kind,
                    origin=f"{stage_run.stage_run_id}:{branch.value}",
                    recipient_set_id=set_id,
                    expected_count=count,
                    scheduled_at=now,
                    source_stage_run_id=stage_run.source_stage_run_id
                    if isinstance(target, ConditionNode)
                    else None,
                    conn=conn,
                )
                scheduled.append(f"{branch.value}->{target_id}")

        logger.info(
            "branches_scheduled",
            execution_id=execution.execution_id,
            stage_run_id=stage_run.stage_run_id,
            node_id=node.node_id,
            scheduled=scheduled,
            recovered=recovered,
        )
        self.refresh_execution(execution.execution_id)
        return True

    # === Failure ===

    def fail_stage(self, stage_run: StageRun, error: str, *, recovered: bool = False) -> bool:
        """Fail a StageRun; the execution fails with it."""
        if not self._recorder.fail_stage_run(
            stage_run.stage_run_id, error, recovered=recovered
        ):
            return False
        logger.error(
            "stage_failed",
            execution_id=stage_run.execution_id,
            stage_run_id=stage_run.stage_run_id,
            node_id=stage_run.node_id,
            error=error,
        )
        self.fail_execution(
            stage_run.execution_id, f"Stage '{stage_run.node_id}' failed: {error}"
        )
        return True

    def fail_execution(self, execution_id: str, reason: str) -> bool:
        """Mark an execution failed and stop its remaining StageRuns."""
        with self._recorder.db.connection() as conn:
            if not self._recorder.finish_execution(
                execution_id, ExecutionStatus.FAILED, reason=reason, conn=conn
            ):
                return False
            self._recorder.cancel_open_stage_runs(
                execution_id, error="execution failed", conn=conn
            )
        logger.error("execution_failed", execution_id=execution_id, reason=reason)
        return True

    # === Next-due pointer ===

    def refresh_execution(self, execution_id: str) -> None:
        """Point the execution at its next due work, or complete it.

        Pending StageRuns are due at their scheduled time; active ones are
        "due" at their staleness deadline so the tick looks at them again
        if they stop making progress. Pending StageRuns never start while
        another is active, so then only the active deadlines count.
        """
        execution = self._recorder.get_execution(execution_id)
        if execution is None or execution.status is not ExecutionStatus.IN_PROGRESS:
            return

        open_runs = self._recorder.open_stage_runs(execution_id)
        if not open_runs:
            if self._recorder.finish_execution(execution_id, ExecutionStatus.COMPLETED):
                logger.info("execution_completed", execution_id=execution_id)
            return

        def due_at(stage_run: StageRun) -> datetime:
            if stage_run.status is StageRunStatus.PENDING:
                return stage_run.scheduled_at
            return stage_run.last_activity_at + self.staleness_threshold(stage_run)

        active = [s for s in open_runs if s.status.is_active]
        pending = [s for s in open_runs if s.status is StageRunStatus.PENDING]
        upcoming = min(active or pending, key=due_at)
        self._recorder.set_next_due(
            execution_id,
            next_node_id=pending[0].node_id if pending else upcoming.node_id,
            next_due_at=due_at(upcoming),
            current_node_id=active[0].node_id if active else None,
        )

    def _require_execution(self, execution_id: str) -> Execution:
        execution = self._recorder.get_execution(execution_id)
        if execution is None:
            raise KeyError(f"Execution not found: {execution_id}")
        return execution


def completion_failure_reason(expected: int, terminal: int) -> str:
    if terminal == 0:
        return f"no send evidence for {expected} expected recipients"
    return f"only {terminal} of {expected} sends reached a terminal state"
