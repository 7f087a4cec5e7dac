"""Row loaders for the database of record.

Handles the seam between SQLAlchemy rows (strings) and domain objects
(strict enum types). This is NOT a trust boundary - the database is our
own data, so a bad enum value crashes here instead of being guessed at.
"""

import json
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
from cadence.core.store.models import (
    ConditionResult,
    Execution,
    Flow,
    Recipient,
    SendRecord,
    StageRun,
    Task,
)


def load_flow(row: Any) -> Flow:
    return Flow(
        flow_id=row.flow_id,
        name=row.name,
        definition=json.loads(row.definition_json),
        definition_hash=row.definition_hash,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def load_recipient(row: Any) -> Recipient:
    return Recipient(
        recipient_id=row.recipient_id,
        email=row.email,
        phone=row.phone,
        name=row.name,
        attributes=json.loads(row.attributes_json) if row.attributes_json else {},
        email_unsubscribed=bool(row.email_unsubscribed),
        sms_unsubscribed=bool(row.sms_unsubscribed),
    )


def load_execution(row: Any) -> Execution:
    """Load Execution from database row. Converts status string to enum."""
    return Execution(
        execution_id=row.execution_id,
        flow_id=row.flow_id,
        flow_snapshot=json.loads(row.flow_snapshot_json),
        flow_snapshot_hash=row.flow_snapshot_hash,
        status=ExecutionStatus(row.status),  # Convert HERE
        recipient_set_id=row.recipient_set_id,
        recipient_count=row.recipient_count,
        created_at=row.created_at,
        current_node_id=row.current_node_id,
        next_node_id=row.next_node_id,
        next_due_at=row.next_due_at,
        failure_reason=row.failure_reason,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def load_stage_run(row: Any) -> StageRun:
    """Load StageRun from database row. Converts kind, status and mode."""
    return StageRun(
        stage_run_id=row.stage_run_id,
        execution_id=row.execution_id,
        node_id=row.node_id,
        node_kind=NodeKind(row.node_kind),
        origin=row.origin,
        status=StageRunStatus(row.status),  # Convert HERE
        recipient_set_id=row.recipient_set_id,
        expected_count=row.expected_count,
        scheduled_at=row.scheduled_at,
        source_stage_run_id=row.source_stage_run_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        batch_id=row.batch_id,
        mode=DispatchMode(row.mode) if row.mode else None,
        content=json.loads(row.content_json) if row.content_json else None,
        chunks_total=row.chunks_total,
        chunks_dispatched=row.chunks_dispatched,
        chunks_completed=row.chunks_completed,
        skipped_count=row.skipped_count,
        progress_updated_at=row.progress_updated_at,
        cancelled=bool(row.cancelled),
        recovered=bool(row.recovered),
        error=row.error,
    )


def load_condition_result(row: Any) -> ConditionResult:
    return ConditionResult(
        condition_result_id=row.condition_result_id,
        stage_run_id=row.stage_run_id,
        yes_set_id=row.yes_set_id,
        no_set_id=row.no_set_id,
        evaluated_count=row.evaluated_count,
        yes_count=row.yes_count,
        no_count=row.no_count,
        no_record_count=row.no_record_count,
        metric_snapshot=json.loads(row.metric_snapshot_json),
        evaluated_at=row.evaluated_at,
    )


def load_send_record(row: Any) -> SendRecord:
    """Load SendRecord from database row. Converts channel and status."""
    return SendRecord(
        send_record_id=row.send_record_id,
        stage_run_id=row.stage_run_id,
        recipient_id=row.recipient_id,
        channel=Channel(row.channel),
        destination=row.destination,
        status=SendStatus(row.status),  # Convert HERE
        created_at=row.created_at,
        updated_at=row.updated_at,
        chunk_index=row.chunk_index,
        attempts=row.attempts,
        provider_message_id=row.provider_message_id,
        error=row.error,
        bounced=bool(row.bounced),
        open_count=row.open_count,
        click_count=row.click_count,
        sent_at=row.sent_at,
        opened_at=row.opened_at,
        clicked_at=row.clicked_at,
    )


def load_task(row: Any) -> Task:
    return Task(
        task_id=row.task_id,
        kind=TaskKind(row.kind),
        payload=json.loads(row.payload_json),
        status=TaskStatus(row.status),
        eligible_at=row.eligible_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        stage_run_id=row.stage_run_id,
        lease_expires_at=row.lease_expires_at,
        attempts=row.attempts,
        last_error=row.last_error,
    )
