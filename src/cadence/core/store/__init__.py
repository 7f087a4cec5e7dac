"""Database of record: schema, connection management, models and recorder."""

from cadence.core.store.database import CadenceDB
from cadence.core.store.models import (
    ConditionResult,
    Execution,
    Flow,
    Recipient,
    SendCounts,
    SendRecord,
    StageRun,
    Task,
)
from cadence.core.store.recipients import RecipientStore
from cadence.core.store.recorder import ExecutionRecorder
from cadence.core.store.schema import metadata

__all__ = [
    "CadenceDB",
    "ConditionResult",
    "Execution",
    "ExecutionRecorder",
    "Flow",
    "Recipient",
    "RecipientStore",
    "SendCounts",
    "SendRecord",
    "StageRun",
    "Task",
    "metadata",
]
