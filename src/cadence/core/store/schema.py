# src/cadence/core/store/schema.py
"""SQLAlchemy table definitions for the database of record.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends. The same metadata
holds the durable task queue and the channel circuit state, so every
worker process shares them through the database.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on storage; values are normalized to UTC on the way
    in and re-attached on the way out so comparisons in Python never mix
    naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# Shared metadata for all tables
metadata = MetaData()

# === Flows ===

flows_table = Table(
    "flows",
    metadata,
    Column("flow_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("definition_json", Text, nullable=False),
    Column("definition_hash", String(64), nullable=False),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
)

# === Recipients ===

recipients_table = Table(
    "recipients",
    metadata,
    Column("recipient_id", String(64), primary_key=True),
    Column("email", String(320)),
    Column("phone", String(32)),
    Column("name", String(255)),
    Column("attributes_json", Text),
    # Opt-outs are never cleared by a re-import
    Column("email_unsubscribed", Boolean, nullable=False, default=False),
    Column("sms_unsubscribed", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime(), nullable=False),
)

# A recipient set is an ordered, immutable list of recipient ids addressed
# by position, so large sets can be walked with offset/limit.
recipient_set_members_table = Table(
    "recipient_set_members",
    metadata,
    Column("set_id", String(64), primary_key=True),
    Column("position", Integer, primary_key=True),
    Column(
        "recipient_id",
        String(64),
        ForeignKey("recipients.recipient_id"),
        nullable=False,
    ),
    UniqueConstraint("set_id", "recipient_id"),
)

# === Executions ===

executions_table = Table(
    "executions",
    metadata,
    Column("execution_id", String(64), primary_key=True),
    Column("flow_id", String(64), ForeignKey("flows.flow_id"), nullable=False),
    Column("flow_snapshot_json", Text, nullable=False),
    Column("flow_snapshot_hash", String(64), nullable=False),
    Column("status", String(32), nullable=False),
    Column("recipient_set_id", String(64), nullable=False),
    Column("recipient_count", Integer, nullable=False),
    Column("current_node_id", String(128)),
    Column("next_node_id", String(128)),
    Column("next_due_at", UTCDateTime()),
    Column("failure_reason", Text),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("started_at", UTCDateTime()),
    Column("completed_at", UTCDateTime()),
    Index("ix_executions_due", "status", "next_due_at"),
)

# === Stage Runs ===

stage_runs_table = Table(
    "stage_runs",
    metadata,
    Column("stage_run_id", String(64), primary_key=True),
    Column(
        "execution_id",
        String(64),
        ForeignKey("executions.execution_id"),
        nullable=False,
    ),
    Column("node_id", String(128), nullable=False),
    Column("node_kind", String(16), nullable=False),
    # "entry" or "<parent stage_run_id>:<branch>" - one run per path into a node
    Column("origin", String(160), nullable=False),
    Column("status", String(32), nullable=False),
    Column("recipient_set_id", String(64), nullable=False),
    Column("expected_count", Integer, nullable=False),
    # StageRun whose send records a condition node reads
    Column("source_stage_run_id", String(64)),
    Column("scheduled_at", UTCDateTime(), nullable=False),
    Column("started_at", UTCDateTime()),
    Column("completed_at", UTCDateTime()),
    Column("batch_id", String(64)),
    Column("mode", String(32)),
    Column("content_json", Text),
    Column("chunks_total", Integer, nullable=False, default=0),
    Column("chunks_dispatched", Integer, nullable=False, default=0),
    Column("chunks_completed", Integer, nullable=False, default=0),
    Column("skipped_count", Integer, nullable=False, default=0),
    Column("progress_updated_at", UTCDateTime()),
    Column("cancelled", Boolean, nullable=False, default=False),
    Column("recovered", Boolean, nullable=False, default=False),
    Column("error", Text),
    UniqueConstraint("execution_id", "node_id", "origin"),
    Index("ix_stage_runs_execution_status", "execution_id", "status"),
)

# === Condition Results ===

condition_results_table = Table(
    "condition_results",
    metadata,
    Column("condition_result_id", String(64), primary_key=True),
    Column(
        "stage_run_id",
        String(64),
        ForeignKey("stage_runs.stage_run_id"),
        nullable=False,
        unique=True,
    ),
    Column("yes_set_id", String(64), nullable=False),
    Column("no_set_id", String(64), nullable=False),
    Column("evaluated_count", Integer, nullable=False),
    Column("yes_count", Integer, nullable=False),
    Column("no_count", Integer, nullable=False),
    Column("no_record_count", Integer, nullable=False),
    Column("metric_snapshot_json", Text, nullable=False),
    Column("evaluated_at", UTCDateTime(), nullable=False),
)

# === Send Records ===

send_records_table = Table(
    "send_records",
    metadata,
    Column("send_record_id", String(64), primary_key=True),
    Column(
        "stage_run_id",
        String(64),
        ForeignKey("stage_runs.stage_run_id"),
        nullable=False,
    ),
    Column(
        "recipient_id",
        String(64),
        ForeignKey("recipients.recipient_id"),
        nullable=False,
    ),
    Column("channel", String(16), nullable=False),
    Column("destination", String(320), nullable=False),
    Column("status", String(16), nullable=False),
    Column("chunk_index", Integer, nullable=False, default=0),
    Column("attempts", Integer, nullable=False, default=0),
    Column("provider_message_id", String(255)),
    Column("error", Text),
    Column("bounced", Boolean, nullable=False, default=False),
    Column("open_count", Integer, nullable=False, default=0),
    Column("click_count", Integer, nullable=False, default=0),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("sent_at", UTCDateTime()),
    Column("opened_at", UTCDateTime()),
    Column("clicked_at", UTCDateTime()),
    Column("updated_at", UTCDateTime(), nullable=False),
    # Idempotency key: one record per recipient per stage run
    UniqueConstraint("recipient_id", "stage_run_id"),
    Index("ix_send_records_stage_status", "stage_run_id", "status"),
)

# === Durable Task Queue ===

tasks_table = Table(
    "tasks",
    metadata,
    Column("task_id", String(64), primary_key=True),
    Column("kind", String(32), nullable=False),
    Column("payload_json", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("stage_run_id", String(64)),
    Column("eligible_at", UTCDateTime(), nullable=False),
    Column("lease_expires_at", UTCDateTime()),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Index("ix_tasks_status_eligible", "status", "eligible_at"),
    Index("ix_tasks_stage_run", "stage_run_id", "kind", "status"),
)

# === Channel Gate ===

# Rate-limit buckets live in ratelimit_<channel> tables owned by pyrate-limiter.

channel_circuits_table = Table(
    "channel_circuits",
    metadata,
    Column("channel", String(16), primary_key=True),
    Column("state", String(16), nullable=False),
    Column("failure_count", Integer, nullable=False),
    Column("window_started_at", Float, nullable=False),  # epoch seconds
    Column("opened_at", Float),  # epoch seconds
    Column("updated_at", UTCDateTime(), nullable=False),
)
