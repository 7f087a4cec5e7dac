"""Flow execution engine: scheduling, dispatch, sending, conditions and recovery."""

from cadence.engine.advance import StageAdvancer
from cadence.engine.completion import StageCompletionPolicy
from cadence.engine.conditions import ConditionEvaluator, metric_value
from cadence.engine.content import Content, ContentRenderer, SnapshotContentResolver
from cadence.engine.dispatcher import BatchDispatcher
from cadence.engine.gateway import (
    FakeSender,
    HttpSmsSender,
    MessageSender,
    SendResult,
    SmtpEmailSender,
)
from cadence.engine.recovery import RecoveryAssessment, RecoverySweeper
from cadence.engine.runtime import CadenceEngine
from cadence.engine.scheduler import ExecutionScheduler, TickReport
from cadence.engine.sender import SendTaskHandler
from cadence.engine.worker import Disposition, Worker

__all__ = [
    "BatchDispatcher",
    "CadenceEngine",
    "ConditionEvaluator",
    "Content",
    "ContentRenderer",
    "Disposition",
    "ExecutionScheduler",
    "FakeSender",
    "HttpSmsSender",
    "MessageSender",
    "RecoveryAssessment",
    "RecoverySweeper",
    "SendResult",
    "SendTaskHandler",
    "SmtpEmailSender",
    "SnapshotContentResolver",
    "StageAdvancer",
    "StageCompletionPolicy",
    "TickReport",
    "Worker",
    "metric_value",
]
