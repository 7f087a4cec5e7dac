# tests/engine/test_recovery.py
"""Tests for stale StageRun detection and recovery."""

from datetime import timedelta
from typing import Any

import pytest


def _stalled(
    engine: Any,
    launch_flow: Any,
    definition: dict[str, Any],
    ids: list[str],
    *,
    lost: int = 1,
) -> tuple[Any, Any, list[str]]:
    """Dispatch a stage, deliver all but ``lost`` sends and drop the rest.

    The dropped SEND tasks are parked as failed, which is what a worker
    crash mid-batch looks like once their records are still pending.

    Returns:
        (execution, stage run, ids of the orphaned records)
    """
    from cadence.contracts.enums import TaskKind
    from cadence.engine.worker import Worker

    execution = launch_flow(engine, definition, ids)
    engine.scheduler.tick()
    worker = Worker(engine, sleep=lambda _: None)
    tasks = [t for t in engine.queue.claim_due(len(ids) + 10) if t.kind is TaskKind.SEND]
    kept, dropped = tasks[: len(tasks) - lost], tasks[len(tasks) - lost :]
    for task in kept:
        worker.process(task)
    for task in dropped:
        engine.queue.fail(task.task_id, "worker lost")
    [stage_run] = engine.recorder.open_stage_runs(execution.execution_id)
    return execution, stage_run, [t.payload["send_record_id"] for t in dropped]


class TestStalenessGuard:
    """check_stale raises only past the threshold."""

    def test_fresh_stage_is_not_stale(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        _, stage_run, _ = _stalled(engine, launch_flow, single_send_flow, seed_recipients(3))
        clock.advance(minutes=29)

        engine.sweeper.check_stale(stage_run)

    def test_stage_past_threshold_is_stale(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.errors import StaleStageDetected

        _, stage_run, _ = _stalled(engine, launch_flow, single_send_flow, seed_recipients(3))
        clock.advance(minutes=31)

        with pytest.raises(StaleStageDetected) as exc_info:
            engine.sweeper.check_stale(stage_run)
        assert exc_info.value.stage_run_id == stage_run.stage_run_id
        assert exc_info.value.age == timedelta(minutes=31)


class TestAssessAndRecover:
    """Outcomes derived from send evidence."""

    def test_orphans_are_failed_and_stage_force_completed(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import (
            ExecutionStatus,
            SendStatus,
            StageOutcome,
            StageRunStatus,
        )

        execution, stage_run, orphans = _stalled(
            engine, launch_flow, single_send_flow, seed_recipients(10)
        )
        clock.advance(minutes=31)

        assessment = engine.sweeper.recover(stage_run)

        assert (assessment.terminal, assessment.pending, assessment.orphaned) == (9, 1, 1)
        assert assessment.queued_tasks == 0
        assert assessment.outcome is StageOutcome.COMPLETE
        recovered = engine.recorder.get_stage_run(stage_run.stage_run_id)
        assert recovered.status is StageRunStatus.COMPLETED
        assert recovered.recovered
        [orphan] = orphans
        record = engine.recorder.get_send_record(orphan)
        assert record.status is SendStatus.FAILED
        assert record.error == "orphaned by stalled stage"
        assert engine.recorder.get_execution(execution.execution_id).status is (
            ExecutionStatus.COMPLETED
        )

    def test_dry_run_changes_nothing(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import SendStatus, StageOutcome, StageRunStatus

        _, stage_run, orphans = _stalled(
            engine, launch_flow, single_send_flow, seed_recipients(5)
        )
        clock.advance(minutes=31)

        assessment = engine.sweeper.recover(stage_run, dry_run=True)

        assert assessment.outcome is StageOutcome.COMPLETE
        assert engine.recorder.get_stage_run(stage_run.stage_run_id).status is (
            StageRunStatus.EXECUTING
        )
        assert engine.recorder.get_send_record(orphans[0]).status is SendStatus.PENDING

    def test_insufficient_evidence_fails_stage(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import ExecutionStatus, StageOutcome, StageRunStatus

        reachable = seed_recipients(7)
        unreachable = seed_recipients(3, prefix="x", email=False, phone=True)
        execution, stage_run, _ = _stalled(
            engine, launch_flow, single_send_flow, reachable + unreachable
        )
        clock.advance(minutes=31)

        assessment = engine.sweeper.recover(stage_run)

        assert assessment.outcome is StageOutcome.FAILED
        failed = engine.recorder.get_stage_run(stage_run.stage_run_id)
        assert failed.status is StageRunStatus.FAILED
        assert failed.error == "only 7 of 10 sends reached a terminal state"
        assert engine.recorder.get_execution(execution.execution_id).status is (
            ExecutionStatus.FAILED
        )

    def test_queued_work_means_still_running(
        self,
        make_engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import StageOutcome, StageRunStatus
        from cadence.core.config import CadenceSettings

        engine = make_engine(CadenceSettings(batching={"negligible_queued_tasks": 2}))
        execution = launch_flow(engine, single_send_flow, seed_recipients(5))
        engine.scheduler.tick()
        [stage_run] = engine.recorder.open_stage_runs(execution.execution_id)
        clock.advance(minutes=31)

        assessment = engine.sweeper.recover(stage_run)

        assert assessment.queued_tasks == 5
        assert assessment.outcome is StageOutcome.STILL_RUNNING
        assert engine.recorder.get_stage_run(stage_run.stage_run_id).status is (
            StageRunStatus.EXECUTING
        )

    def test_cancelled_stage_is_failed(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import StageOutcome, StageRunStatus

        execution, stage_run, _ = _stalled(
            engine, launch_flow, single_send_flow, seed_recipients(4)
        )
        engine.scheduler.cancel(execution.execution_id)
        stage_run = engine.recorder.get_stage_run(stage_run.stage_run_id)
        clock.advance(minutes=31)

        assessment = engine.sweeper.recover(stage_run)

        assert assessment.outcome is StageOutcome.FAILED
        failed = engine.recorder.get_stage_run(stage_run.stage_run_id)
        assert failed.status is StageRunStatus.FAILED
        assert failed.error == "stage cancelled"

    def test_stalled_condition_is_evaluated_and_completed(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        branching_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import NodeKind, StageOutcome, StageRunStatus
        from cadence.engine.worker import Worker

        worker = Worker(engine, sleep=lambda _: None)
        execution = launch_flow(engine, branching_flow, seed_recipients(4))
        engine.scheduler.tick()
        worker.run_pending()
        clock.advance(seconds=30)
        worker.run_pending()
        clock.advance(days=1)
        # A worker claimed the condition and died before evaluating it
        [condition] = engine.recorder.open_stage_runs(execution.execution_id)
        engine.recorder.claim_stage_run(condition.stage_run_id, StageRunStatus.EXECUTING)
        clock.advance(minutes=31)

        [assessment] = engine.sweeper.sweep()

        assert assessment.node_kind is NodeKind.CONDITION
        assert assessment.outcome is StageOutcome.COMPLETE
        assert engine.recorder.get_condition_result(condition.stage_run_id).no_count == 4
        [reminder] = engine.recorder.open_stage_runs(execution.execution_id)
        assert reminder.node_id == "reminder"
        assert engine.recorder.get_stage_run(condition.stage_run_id).recovered


class TestSweep:
    """Sweeping every stale StageRun."""

    def test_sweep_finds_only_stale_stages(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        _stalled(engine, launch_flow, single_send_flow, seed_recipients(3))

        clock.advance(minutes=10)
        assert engine.sweeper.sweep() == []
        clock.advance(minutes=21)
        assert len(engine.sweeper.sweep()) == 1

    def test_threshold_override(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import StageRunStatus

        _, stage_run, _ = _stalled(engine, launch_flow, single_send_flow, seed_recipients(3))
        clock.advance(minutes=6)

        [assessment] = engine.sweeper.sweep(stale_after=timedelta(minutes=5), dry_run=True)

        assert assessment.stage_run_id == stage_run.stage_run_id
        assert engine.recorder.get_stage_run(stage_run.stage_run_id).status is (
            StageRunStatus.EXECUTING
        )

    def test_recovery_failure_fails_only_that_execution(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        from cadence.contracts.enums import ExecutionStatus

        first, first_stage, _ = _stalled(
            engine, launch_flow, single_send_flow, seed_recipients(3, prefix="a")
        )
        second, _, _ = _stalled(
            engine, launch_flow, single_send_flow, seed_recipients(3, prefix="b")
        )
        clock.advance(minutes=31)

        original = engine.sweeper.assess

        def flaky(stage_run: Any) -> Any:
            if stage_run.stage_run_id == first_stage.stage_run_id:
                raise RuntimeError("evidence unavailable")
            return original(stage_run)

        monkeypatch.setattr(engine.sweeper, "assess", flaky)
        assessments = engine.sweeper.sweep()

        assert len(assessments) == 1
        assert engine.recorder.get_execution(first.execution_id).status is (
            ExecutionStatus.FAILED
        )
        assert engine.recorder.get_execution(second.execution_id).status is (
            ExecutionStatus.COMPLETED
        )
