# src/cadence/core/store/models.py
"""Dataclass models for the database of record.

These models define the shapes for tracking:
- Flows and the recipients they target
- Executions (one run of a flow against a recipient set)
- StageRuns (one node's run within an execution)
- ConditionResults (branch split of a condition StageRun)
- SendRecords (one message to one recipient within a StageRun)
- Tasks (durable queued units of work)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cadence.contracts.enums import (
    Channel,
    DispatchMode,
    ExecutionStatus,
    NodeKind,
    SendStatus,
    StageRunStatus,
    TaskKind,
    TaskStatus,
)


@dataclass
class Flow:
    """A stored flow definition."""

    flow_id: str
    name: str
    definition: dict[str, Any]
    definition_hash: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Recipient:
    """An addressable contact."""

    recipient_id: str
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    email_unsubscribed: bool = False
    sms_unsubscribed: bool = False

    def is_unsubscribed(self, channel: Channel) -> bool:
        if channel is Channel.EMAIL:
            return self.email_unsubscribed
        return self.sms_unsubscribed

    def destination(self, channel: Channel) -> str | None:
        """Address for a channel, or None if the recipient can't be reached on it."""
        value = self.email if channel is Channel.EMAIL else self.phone
        if value is None or not value.strip():
            return None
        return value.strip()


@dataclass
class Execution:
    """One run of a flow against a recipient set."""

    execution_id: str
    flow_id: str
    flow_snapshot: dict[str, Any]
    flow_snapshot_hash: str
    status: ExecutionStatus
    recipient_set_id: str
    recipient_count: int
    created_at: datetime
    current_node_id: str | None = None
    next_node_id: str | None = None
    next_due_at: datetime | None = None
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class StageRun:
    """One node's run within an execution."""

    stage_run_id: str
    execution_id: str
    node_id: str
    node_kind: NodeKind
    origin: str
    status: StageRunStatus
    recipient_set_id: str
    expected_count: int
    scheduled_at: datetime
    source_stage_run_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    batch_id: str | None = None
    mode: DispatchMode | None = None
    content: dict[str, Any] | None = None
    chunks_total: int = 0
    chunks_dispatched: int = 0
    chunks_completed: int = 0
    skipped_count: int = 0
    progress_updated_at: datetime | None = None
    cancelled: bool = False
    recovered: bool = False
    error: str | None = None

    @property
    def last_activity_at(self) -> datetime:
        """Latest liveness signal, used for staleness checks."""
        return self.progress_updated_at or self.started_at or self.scheduled_at

    @property
    def all_chunks_dispatched(self) -> bool:
        return self.chunks_dispatched >= self.chunks_total


@dataclass(frozen=True)
class ConditionResult:
    """Branch assignment produced by evaluating one condition StageRun.

    Recipient lists live in recipient sets (``yes_set_id`` / ``no_set_id``);
    they are loaded on demand, not held here.
    """

    condition_result_id: str
    stage_run_id: str
    yes_set_id: str
    no_set_id: str
    evaluated_count: int
    yes_count: int
    no_count: int
    no_record_count: int
    metric_snapshot: dict[str, Any]
    evaluated_at: datetime


@dataclass
class SendRecord:
    """One message attempt to one recipient within one StageRun."""

    send_record_id: str
    stage_run_id: str
    recipient_id: str
    channel: Channel
    destination: str
    status: SendStatus
    created_at: datetime
    updated_at: datetime
    chunk_index: int = 0
    attempts: int = 0
    provider_message_id: str | None = None
    error: str | None = None
    bounced: bool = False
    open_count: int = 0
    click_count: int = 0
    sent_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None


@dataclass(frozen=True)
class SendCounts:
    """Send record evidence for one StageRun."""

    terminal: int
    pending: int

    @property
    def total(self) -> int:
        return self.terminal + self.pending


@dataclass
class Task:
    """A durable unit of work."""

    task_id: str
    kind: TaskKind
    payload: dict[str, Any]
    status: TaskStatus
    eligible_at: datetime
    created_at: datetime
    updated_at: datetime
    stage_run_id: str | None = None
    lease_expires_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
