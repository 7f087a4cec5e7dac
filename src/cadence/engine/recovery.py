# src/cadence/engine/recovery.py
"""Recovery of stale StageRuns.

A StageRun that stays ``executing``/``batching`` past its staleness
threshold is presumed abandoned (a worker died mid-batch). Its real
state is re-derived from durable evidence, never from in-memory state:

1. Count the StageRun's SendRecords (terminal vs pending) and its open
   send/dispatch tasks.
2. Many tasks still queued: genuinely in flight, leave it alone.
3. Pending records with no task left to deliver them: orphans; they are
   failed, then counted as terminal.
4. Apply the same ``StageCompletionPolicy`` the completion check uses and
   force-complete or fail the StageRun accordingly.

Condition StageRuns are re-evaluated (or their stored result reused) and
completed.

Usage:
    sweeper = RecoverySweeper(recorder, queue, advancer, evaluator, settings)

    for assessment in sweeper.sweep(dry_run=True):
        print(assessment.stage_run_id, assessment.outcome)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from cadence.contracts.enums import NodeKind, StageOutcome, TaskKind
from cadence.contracts.errors import StaleStageDetected
from cadence.core.config import CadenceSettings
from cadence.core.flow import ConditionNode
from cadence.core.logging import get_logger
from cadence.core.queue import WorkQueue
from cadence.core.store.models import StageRun
from cadence.core.store.recorder import ExecutionRecorder
from cadence.engine.advance import StageAdvancer, completion_failure_reason
from cadence.engine.conditions import ConditionEvaluator

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_DELIVERY_TASKS = (TaskKind.SEND, TaskKind.DISPATCH_CHUNK)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RecoveryAssessment:
    """What the durable evidence says about one stale StageRun."""

    stage_run_id: str
    execution_id: str
    node_id: str
    node_kind: NodeKind
    age: timedelta
    expected: int
    terminal: int
    pending: int
    queued_tasks: int
    orphaned: int
    outcome: StageOutcome

    def __post_init__(self) -> None:
        if self.orphaned and self.orphaned > self.pending:
            raise ValueError("orphaned sends cannot exceed pending sends")


class RecoverySweeper:
    """Finds stale StageRuns and resolves them from their send evidence."""

    def __init__(
        self,
        recorder: ExecutionRecorder,
        queue: WorkQueue,
        advancer: StageAdvancer,
        evaluator: ConditionEvaluator,
        settings: CadenceSettings,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._recorder = recorder
        self._queue = queue
        self._advancer = advancer
        self._evaluator = evaluator
        self._settings = settings
        self._clock = clock or _utcnow

    def check_stale(self, stage_run: StageRun) -> None:
        """Staleness guard for an active StageRun.

        Raises:
            StaleStageDetected: If it made no progress within its threshold
        """
        if not stage_run.status.is_active:
            return
        age = self._clock() - stage_run.last_activity_at
        if age > self._advancer.staleness_threshold(stage_run):
            raise StaleStageDetected(stage_run.stage_run_id, age)

    def assess(self, stage_run: StageRun) -> RecoveryAssessment:
        """Decide a StageRun's outcome from durable evidence (no writes)."""
        age = self._clock() - stage_run.last_activity_at

        if stage_run.node_kind is not NodeKind.SEND:
            return RecoveryAssessment(
                stage_run_id=stage_run.stage_run_id,
                execution_id=stage_run.execution_id,
                node_id=stage_run.node_id,
                node_kind=stage_run.node_kind,
                age=age,
                expected=stage_run.expected_count,
                terminal=0,
                pending=0,
                queued_tasks=0,
                orphaned=0,
                outcome=StageOutcome.FAILED if stage_run.cancelled else StageOutcome.COMPLETE,
            )

        counts = self._recorder.count_sends(stage_run.stage_run_id)
        queued = self._queue.count_open(
            stage_run_id=stage_run.stage_run_id, kinds=_DELIVERY_TASKS
        )
        chunks_open = self._queue.count_open(
            stage_run_id=stage_run.stage_run_id, kinds=(TaskKind.DISPATCH_CHUNK,)
        )
        orphaned = 0
        if stage_run.cancelled:
            outcome = StageOutcome.FAILED
        elif queued >= self._settings.batching.negligible_queued_tasks or chunks_open:
            outcome = StageOutcome.STILL_RUNNING
        elif counts.pending and queued:
            outcome = StageOutcome.STILL_RUNNING
        else:
            orphaned = counts.pending
            outcome = self._advancer.policy.decide(
                stage_run.expected_count, counts.terminal + orphaned, 0
            )

        return RecoveryAssessment(
            stage_run_id=stage_run.stage_run_id,
            execution_id=stage_run.execution_id,
            node_id=stage_run.node_id,
            node_kind=stage_run.node_kind,
            age=age,
            expected=stage_run.expected_count,
            terminal=counts.terminal,
            pending=counts.pending,
            queued_tasks=queued,
            orphaned=orphaned,
            outcome=outcome,
        )

    def recover(self, stage_run: StageRun, *, dry_run: bool = False) -> RecoveryAssessment:
        """Assess a stale StageRun and, unless ``dry_run``, act on the outcome."""
        assessment = self.assess(stage_run)
        log = logger.bind(
            execution_id=stage_run.execution_id,
            stage_run_id=stage_run.stage_run_id,
            node_id=stage_run.node_id,
            age_minutes=round(assessment.age.total_seconds() / 60, 1),
            outcome=assessment.outcome.value,
        )
        if dry_run or assessment.outcome is StageOutcome.STILL_RUNNING:
            log.info("stale_stage_assessed", dry_run=dry_run, queued_tasks=assessment.queued_tasks)
            return assessment

        if stage_run.node_kind is NodeKind.CONDITION and not stage_run.cancelled:
            self._recover_condition(stage_run)
        elif assessment.outcome is StageOutcome.COMPLETE:
            if assessment.orphaned:
                self._recorder.fail_orphaned_sends(
                    stage_run.stage_run_id, "orphaned by stalled stage"
                )
            self._advancer.complete_send_stage(stage_run, recovered=True)
        else:
            if assessment.orphaned:
                self._recorder.fail_orphaned_sends(
                    stage_run.stage_run_id, "orphaned by stalled stage"
                )
            reason = (
                "stage cancelled"
                if stage_run.cancelled
                else completion_failure_reason(
                    assessment.expected, assessment.terminal + assessment.orphaned
                )
            )
            self._advancer.fail_stage(stage_run, reason, recovered=True)

        log.warning("stale_stage_recovered", orphaned=assessment.orphaned)
        return assessment

    def _recover_condition(self, stage_run: StageRun) -> None:
        execution = self._recorder.get_execution(stage_run.execution_id)
        if execution is None:
            raise KeyError(f"Execution not found: {stage_run.execution_id}")
        node = self._advancer.graph_for(execution).node(stage_run.node_id)
        if not isinstance(node, ConditionNode):
            raise TypeError(f"Node '{stage_run.node_id}' is not a condition node")
        result = self._evaluator.evaluate(stage_run, node)
        self._advancer.complete_condition_stage(stage_run, result, recovered=True)

    def sweep(
        self,
        *,
        dry_run: bool = False,
        stale_after: timedelta | None = None,
        limit: int = 500,
    ) -> list[RecoveryAssessment]:
        """Recover every stale StageRun. One failure never stops the sweep.

        Args:
            dry_run: Report what would be done without writing
            stale_after: Override both staleness thresholds
            limit: Maximum StageRuns handled per sweep
        """
        scheduler = self._settings.scheduler
        stale_runs = self._recorder.list_stale_stage_runs(
            self._clock(),
            stale_after=stale_after or timedelta(minutes=scheduler.stale_after_minutes),
            stale_chunked_after=stale_after
            or timedelta(minutes=scheduler.stale_chunked_after_minutes),
            limit=limit,
        )
        assessments: list[RecoveryAssessment] = []
        for stage_run in stale_runs:
            try:
                assessments.append(self.recover(stage_run, dry_run=dry_run))
            except Exception as e:
                logger.exception(
                    "stale_stage_recovery_failed",
                    stage_run_id=stage_run.stage_run_id,
                    error=str(e),
                )
                if not dry_run:
                    self._advancer.fail_execution(
                        stage_run.execution_id,
                        f"Recovery of stage '{stage_run.node_id}' failed: {e}",
                    )
        return assessments
