# src/cadence/engine/scheduler.py
"""Execution scheduler: launch, cancel and the periodic tick.

Each tick loads every in-progress execution whose next-due time has
passed and advances it by at most one node. The nodes of one execution
run strictly one after another:

- while a StageRun is executing or batching, due siblings wait; if it is
  past its staleness threshold it goes to the recovery sweeper instead;
- otherwise the earliest due pending StageRun is claimed
  (compare-and-set) and started: a send node is dispatched, a condition
  node is evaluated and its branches scheduled.

One execution's failure is recorded on that execution and never aborts
the tick for the others.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from cadence.contracts.enums import ExecutionStatus, StageRunStatus
from cadence.contracts.errors import (
    ExecutionNotFoundError,
    FlowNotFoundError,
    StaleStageDetected,
)
from cadence.core.flow import ConditionNode, EndNode, FlowGraph, SendNode
from cadence.core.logging import get_logger
from cadence.core.store.models import Execution, StageRun
from cadence.core.store.recipients import RecipientStore
from cadence.core.store.recorder import ExecutionRecorder
from cadence.engine.advance import StageAdvancer
from cadence.engine.conditions import ConditionEvaluator
from cadence.engine.dispatcher import BatchDispatcher, dispatch_status
from cadence.engine.recovery import RecoverySweeper

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ENTRY_ORIGIN = "entry"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class TickReport:
    """What one scheduler tick did."""

    due: int = 0
    started: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class ExecutionScheduler:
    """Drives executions from node to node.

    Example:
        scheduler = ExecutionScheduler(recorder, recipients, dispatcher,
                                       evaluator, advancer, sweeper)
        execution = scheduler.launch("welcome", ["r1", "r2"])
        scheduler.tick()
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        recipients: RecipientStore,
        dispatcher: BatchDispatcher,
        evaluator: ConditionEvaluator,
        advancer: StageAdvancer,
        sweeper: RecoverySweeper,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._recorder = recorder
        self._recipients = recipients
        self._dispatcher = dispatcher
        self._evaluator = evaluator
        self._advancer = advancer
        self._sweeper = sweeper
        self._clock = clock or _utcnow

    # === Launch / cancel ===

    def launch(self, flow_id: str, recipient_ids: Iterable[str]) -> Execution:
        """Start a flow for a list of recipients.

        The flow definition is snapshotted onto the execution and the entry
        node is due immediately.

        Raises:
            FlowNotFoundError: If no flow is stored under ``flow_id``
            GraphIntegrityError: If the stored definition is invalid
            ValueError: If any recipient id is unknown
        """
        flow = self._recorder.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        graph = FlowGraph.from_definition(flow.definition, flow_id=flow_id)
        entry = graph.node(graph.entry_node)

        ids = list(dict.fromkeys(recipient_ids))
        missing = self._recipients.missing_ids(ids)
        if missing:
            preview = ", ".join(missing[:5])
            raise ValueError(f"{len(missing)} unknown recipient(s): {preview}")

        now = self._clock()
        set_id, count = self._recipients.create_set(ids)
        with self._recorder.db.connection() as conn:
            execution = self._recorder.create_execution(flow, set_id, count, conn=conn)
            self._recorder.schedule_stage_run(
                execution.execution_id,
                entry.node_id,
                entry.kind,
                origin=ENTRY_ORIGIN,
                recipient_set_id=set_id,
                expected_count=count,
                scheduled_at=now,
                conn=conn,
            )
            self._recorder.start_execution(
                execution.execution_id,
                next_node_id=entry.node_id,
                next_due_at=now,
                conn=conn,
            )

        logger.info(
            "execution_launched",
            execution_id=execution.execution_id,
            flow_id=flow_id,
            recipients=count,
            entry_node=entry.node_id,
        )
        return self._recorder.get_execution(execution.execution_id)  # type: ignore[return-value]

    def cancel(self, execution_id: str) -> bool:
        """Cancel an execution.

        Pending StageRuns fail; active ones are flagged so their queued send
        tasks no-op.

        Returns:
            True if the execution was open and is now cancelled

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist
        """
        if self._recorder.get_execution(execution_id) is None:
            raise ExecutionNotFoundError(execution_id)
        with self._recorder.db.connection() as conn:
            if not self._recorder.finish_execution(
                execution_id,
                ExecutionStatus.CANCELLED,
                reason="cancelled by operator",
                conn=conn,
            ):
                return False
            self._recorder.cancel_open_stage_runs(execution_id, conn=conn)
        logger.info("execution_cancelled", execution_id=execution_id)
        return True

    # === Tick ===

    def tick(self, *, limit: int = 500) -> TickReport:
        """Advance every due execution once."""
        now = self._clock()
        due = self._recorder.list_due_executions(now, limit=limit)
        report = TickReport(due=len(due))
        for execution in due:
            try:
                self._advance(execution, now, report)
            except Exception as e:
                logger.exception(
                    "execution_advance_failed",
                    execution_id=execution.execution_id,
                    error=str(e),
                )
                self._advancer.fail_execution(execution.execution_id, str(e))
                report.failed[execution.execution_id] = str(e)
        if due:
            logger.info(
                "tick_completed",
                due=report.due,
                started=len(report.started),
                recovered=len(report.recovered),
                failed=len(report.failed),
            )
        return report

    def _advance(self, execution: Execution, now: datetime, report: TickReport) -> None:
        graph = self._advancer.graph_for(execution)
        open_runs = self._recorder.open_stage_runs(execution.execution_id)

        # Nodes of one execution run one after another: a live stage holds
        # every due sibling back, a stale one is recovered first
        active = [s for s in open_runs if s.status.is_active]
        if active:
            for stage_run in active:
                if self._recover_if_stale(execution, stage_run):
                    report.recovered.append(stage_run.stage_run_id)
            self._advancer.refresh_execution(execution.execution_id)
            return

        due = [s for s in open_runs if s.scheduled_at <= now]
        if due and self._start(due[0], graph):
            report.started.append(due[0].stage_run_id)
        self._advancer.refresh_execution(execution.execution_id)

    def _recover_if_stale(self, execution: Execution, stage_run: StageRun) -> bool:
        try:
            self._sweeper.check_stale(stage_run)
        except StaleStageDetected as e:
            logger.warning(
                "stale_stage_detected",
                execution_id=execution.execution_id,
                stage_run_id=e.stage_run_id,
                age_minutes=round(e.age.total_seconds() / 60, 1),
            )
            self._sweeper.recover(stage_run)
            return True
        logger.debug(
            "stage_waiting_on_active",
            execution_id=execution.execution_id,
            active_stage_run_id=stage_run.stage_run_id,
            node_id=stage_run.node_id,
        )
        return False

    def _start(self, stage_run: StageRun, graph: FlowGraph) -> bool:
        """Claim and start one pending StageRun. False if another caller won it."""
        node = graph.node(stage_run.node_id)

        if isinstance(node, SendNode):
            status = dispatch_status(stage_run.expected_count, self._dispatcher.settings)
            if not self._recorder.claim_stage_run(stage_run.stage_run_id, status):
                return False
            self._dispatcher.dispatch(stage_run, node, graph)
            return True

        if not self._recorder.claim_stage_run(stage_run.stage_run_id, StageRunStatus.EXECUTING):
            return False
        # Re-read: claim stamped started_at
        claimed = self._recorder.get_stage_run(stage_run.stage_run_id) or stage_run

        if isinstance(node, ConditionNode):
            result = self._evaluator.evaluate(claimed, node)
            self._advancer.complete_condition_stage(claimed, result)
        elif isinstance(node, EndNode):
            self._recorder.complete_stage_run(claimed.stage_run_id)
        return True
