"""Shared contracts: enums, errors and events crossing subsystem boundaries."""

from cadence.contracts.enums import (
    Branch,
    Channel,
    CircuitState,
    DispatchMode,
    ExecutionStatus,
    Metric,
    NodeKind,
    SendStatus,
    StageOutcome,
    StageRunStatus,
    TaskKind,
    TaskStatus,
)
from cadence.contracts.errors import (
    CadenceError,
    CircuitOpen,
    ExecutionNotFoundError,
    FlowNotFoundError,
    GraphIntegrityError,
    GraphValidationError,
    PermanentTransportError,
    RateLimited,
    RetryLater,
    SchedulingSignal,
    SendTimeout,
    StaleStageDetected,
    TransientTransportError,
    TransportError,
)
from cadence.contracts.events import CircuitListener, CircuitOpened

__all__ = [
    # enums
    "Branch",
    "Channel",
    "CircuitState",
    "DispatchMode",
    "ExecutionStatus",
    "Metric",
    "NodeKind",
    "SendStatus",
    "StageOutcome",
    "StageRunStatus",
    "TaskKind",
    "TaskStatus",
    # errors
    "CadenceError",
    "CircuitOpen",
    "ExecutionNotFoundError",
    "FlowNotFoundError",
    "GraphIntegrityError",
    "GraphValidationError",
    "PermanentTransportError",
    "RateLimited",
    "RetryLater",
    "SchedulingSignal",
    "SendTimeout",
    "StaleStageDetected",
    "TransientTransportError",
    "TransportError",
    # events
    "CircuitListener",
    "CircuitOpened",
]
