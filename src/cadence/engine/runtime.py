# src/cadence/engine/runtime.py
"""Wiring: build every engine component from settings.

All components share one database, one clock and one queue. Tests pass
an in-memory database, fake senders and a controllable clock.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from cadence.contracts.enums import Channel
from cadence.contracts.events import CircuitListener
from cadence.core.config import CadenceSettings
from cadence.core.gate import ChannelGate, log_circuit_opened
from cadence.core.queue import WorkQueue
from cadence.core.store.database import CadenceDB
from cadence.core.store.recipients import RecipientStore
from cadence.core.store.recorder import ExecutionRecorder
from cadence.engine.advance import StageAdvancer
from cadence.engine.completion import StageCompletionPolicy
from cadence.engine.conditions import ConditionEvaluator
from cadence.engine.dispatcher import BatchDispatcher
from cadence.engine.gateway import MessageSender, build_senders
from cadence.engine.recovery import RecoverySweeper
from cadence.engine.scheduler import ExecutionScheduler
from cadence.engine.sender import SendTaskHandler


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CadenceEngine:
    """Every component of a running engine, wired together."""

    settings: CadenceSettings
    db: CadenceDB
    recorder: ExecutionRecorder
    recipients: RecipientStore
    queue: WorkQueue
    gate: ChannelGate
    advancer: StageAdvancer
    evaluator: ConditionEvaluator
    dispatcher: BatchDispatcher
    send_handler: SendTaskHandler
    sweeper: RecoverySweeper
    scheduler: ExecutionScheduler
    clock: Callable[[], datetime]

    @classmethod
    def build(
        cls,
        settings: CadenceSettings,
        *,
        db: CadenceDB | None = None,
        senders: Mapping[Channel, MessageSender] | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        listeners: list[CircuitListener] | None = None,
    ) -> CadenceEngine:
        clock = clock or _utcnow
        db = db or CadenceDB.from_url(settings.database.url, echo=settings.database.echo)

        recorder = ExecutionRecorder(db, clock=clock)
        recipients = RecipientStore(db)
        queue = WorkQueue(db, lease_seconds=settings.worker.lease_seconds, clock=clock)
        gate = ChannelGate.from_settings(
            db,
            settings.gate,
            clock=clock,
            rng=rng,
            listeners=listeners if listeners is not None else [log_circuit_opened],
        )
        advancer = StageAdvancer(
            recorder,
            settings.scheduler,
            policy=StageCompletionPolicy(settings.batching.completion_ratio),
            clock=clock,
        )
        evaluator = ConditionEvaluator(
            recorder, recipients, page_size=settings.batching.chunk_size
        )
        dispatcher = BatchDispatcher(recorder, recipients, queue, settings.batching)
        send_handler = SendTaskHandler(
            recorder,
            recipients,
            gate,
            senders if senders is not None else build_senders(settings),
            settings.retry,
        )
        sweeper = RecoverySweeper(
            recorder, queue, advancer, evaluator, settings, clock=clock
        )
        scheduler = ExecutionScheduler(
            recorder, recipients, dispatcher, evaluator, advancer, sweeper, clock=clock
        )
        return cls(
            settings=settings,
            db=db,
            recorder=recorder,
            recipients=recipients,
            queue=queue,
            gate=gate,
            advancer=advancer,
            evaluator=evaluator,
            dispatcher=dispatcher,
            send_handler=send_handler,
            sweeper=sweeper,
            scheduler=scheduler,
            clock=clock,
        )

    def close(self) -> None:
        self.send_handler.close()
        self.gate.close()
        self.db.close()
