# src/cadence/engine/worker.py
"""Task worker: leases due tasks from the durable queue and runs them.

Every task ends one of three ways:

- done: the handler returned normally
- re-queued with delay: the handler raised a ``SchedulingSignal``
  (rate limit, open circuit, retry backoff) or asked to be polled again
- failed: the handler raised anything else; the task is parked with the
  error and not retried. The recurring tick is the exception: it is
  re-queued for the next interval with the error recorded

The tick also purges finished tasks past their retention.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta
from enum import Enum

from cadence.contracts.enums import StageOutcome, TaskKind
from cadence.contracts.errors import CircuitOpen, RateLimited, SchedulingSignal
from cadence.core.flow import SendNode
from cadence.core.logging import get_logger
from cadence.core.store.models import Task
from cadence.engine.runtime import CadenceEngine

logger = get_logger(__name__)


class Disposition(str, Enum):
    """How a processed task left the worker."""

    DONE = "done"
    REQUEUED = "requeued"
    FAILED = "failed"


class Worker:
    """Runs queued tasks against an engine.

    Example:
        engine = CadenceEngine.build(settings)
        worker = Worker(engine)
        worker.ensure_tick_scheduled()
        worker.run_forever()
    """

    def __init__(
        self,
        engine: CadenceEngine,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._queue = engine.queue
        self._sleep = sleep
        self._handlers: dict[TaskKind, Callable[[Task], bool]] = {
            TaskKind.TICK: self._run_tick,
            TaskKind.DISPATCH_CHUNK: self._run_dispatch_chunk,
            TaskKind.SEND: self._run_send,
            TaskKind.CHECK_STAGE_COMPLETION: self._run_completion_check,
        }

    def ensure_tick_scheduled(self) -> bool:
        """Enqueue the recurring tick task unless one is already queued.

        Returns:
            True if a tick task was enqueued
        """
        if self._queue.count_open(kinds=(TaskKind.TICK,)):
            return False
        self._queue.enqueue(TaskKind.TICK, {})
        return True

    def process(self, task: Task) -> Disposition:
        """Run one claimed task and settle it in the queue."""
        log = logger.bind(task_id=task.task_id, kind=task.kind.value, attempt=task.attempts)
        handler = self._handlers[task.kind]
        try:
            done = handler(task)
        except SchedulingSignal as signal:
            level = log.warning if isinstance(signal, (RateLimited, CircuitOpen)) else log.info
            level(
                "task_requeued",
                reason=type(signal).__name__,
                channel=signal.channel,
                retry_after=round(signal.retry_after, 2),
            )
            self._queue.requeue(task.task_id, delay=signal.retry_after, error=str(signal))
            return Disposition.REQUEUED
        except Exception as e:
            log.exception("task_failed", error=str(e))
            if task.kind is TaskKind.TICK:
                # The recurring tick is never parked
                self._queue.requeue(
                    task.task_id,
                    delay=self._engine.settings.scheduler.tick_interval_seconds,
                    error=f"{type(e).__name__}: {e}",
                )
                return Disposition.REQUEUED
            self._queue.fail(task.task_id, f"{type(e).__name__}: {e}")
            return Disposition.FAILED

        if done:
            self._queue.complete(task.task_id)
            return Disposition.DONE
        return Disposition.REQUEUED

    def run_once(self, max_tasks: int | None = None) -> int:
        """Claim and process one batch of due tasks. Returns how many ran."""
        batch_size = max_tasks or self._engine.settings.worker.batch_size
        tasks = self._queue.claim_due(batch_size)
        for task in tasks:
            self.process(task)
        return len(tasks)

    def run_pending(self, *, max_tasks: int | None = None, max_rounds: int = 10_000) -> int:
        """Process tasks until nothing is due right now. Returns the total run."""
        total = 0
        for _ in range(max_rounds):
            processed = self.run_once(max_tasks)
            if processed == 0:
                break
            total += processed
        return total

    def run_forever(self, stop: threading.Event | None = None) -> None:
        """Poll the queue until ``stop`` is set."""
        stop = stop or threading.Event()
        poll = self._engine.settings.worker.poll_interval_seconds
        logger.info("worker_started", poll_interval_seconds=poll)
        while not stop.is_set():
            if self.run_once() == 0:
                self._sleep(poll)
        logger.info("worker_stopped")

    # === Handlers: return True when the task is finished ===

    def _run_tick(self, task: Task) -> bool:
        self._engine.scheduler.tick()
        self._engine.sweeper.sweep()
        self._queue.purge_done(
            older_than=timedelta(hours=self._engine.settings.worker.task_retention_hours)
        )
        self._queue.requeue(
            task.task_id, delay=self._engine.settings.scheduler.tick_interval_seconds
        )
        return False

    def _run_dispatch_chunk(self, task: Task) -> bool:
        payload = task.payload
        stage_run = self._engine.recorder.get_stage_run(payload["stage_run_id"])
        if stage_run is None:
            raise KeyError(f"StageRun not found: {payload['stage_run_id']}")
        execution = self._engine.recorder.get_execution(stage_run.execution_id)
        if execution is None:
            raise KeyError(f"Execution not found: {stage_run.execution_id}")
        node = self._engine.advancer.graph_for(execution).node(stage_run.node_id)
        if not isinstance(node, SendNode):
            raise TypeError(f"Node '{stage_run.node_id}' is not a send node")
        self._engine.dispatcher.dispatch_chunk(
            task.task_id,
            stage_run.stage_run_id,
            node,
            chunk_index=int(payload["chunk_index"]),
            offset=int(payload["offset"]),
            limit=int(payload["limit"]),
        )
        return True

    def _run_send(self, task: Task) -> bool:
        self._engine.send_handler.handle(task.payload["send_record_id"])
        return True

    def _run_completion_check(self, task: Task) -> bool:
        outcome = self._engine.advancer.check_send_stage(task.payload["stage_run_id"])
        if outcome is StageOutcome.STILL_RUNNING:
            self._queue.requeue(
                task.task_id, delay=self._engine.settings.batching.completion_poll_seconds
            )
            return False
        return True
