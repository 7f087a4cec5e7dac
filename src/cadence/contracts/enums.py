"""All status codes, modes, and kinds used across subsystem boundaries.

Every enum that is persisted uses (str, Enum) so the stored value is the
plain string and rows convert back with ``EnumType(row.column)``.
"""

from enum import Enum


class Channel(str, Enum):
    """Delivery channel of a send node.

    Uses (str, Enum) for database serialization to send_records.channel.
    """

    EMAIL = "email"
    SMS = "sms"


class ExecutionStatus(str, Enum):
    """Status of one run of a flow against a recipient set.

    Uses (str, Enum) because this IS stored in the database (executions.status).
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class StageRunStatus(str, Enum):
    """Status of one node's run within an execution.

    Uses (str, Enum) for database serialization to stage_runs.status.

    pending -> executing | batching -> completed | failed
    """

    PENDING = "pending"
    EXECUTING = "executing"
    BATCHING = "batching"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """Whether a worker is (or was, if stale) processing this stage."""
        return self in (StageRunStatus.EXECUTING, StageRunStatus.BATCHING)


class DispatchMode(str, Enum):
    """How a send stage delivered its recipients.

    Uses (str, Enum) for database serialization to stage_runs.mode.
    """

    DIRECT = "direct"
    LARGE_VOLUME_CHUNKED = "large_volume_chunked"


class NodeKind(str, Enum):
    """Kind of node in a flow graph.

    Uses (str, Enum) for database serialization to stage_runs.node_kind.
    """

    SEND = "send"
    CONDITION = "condition"
    END = "end"


class SendStatus(str, Enum):
    """Delivery state of one message to one recipient.

    Uses (str, Enum) for database serialization to send_records.status.
    Engagement states only move forward: sent -> opened -> clicked.
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"

    @property
    def is_terminal(self) -> bool:
        return self is not SendStatus.PENDING


class Branch(str, Enum):
    """Branch label on a condition node's outgoing edge."""

    YES = "yes"
    NO = "no"


class CircuitState(str, Enum):
    """State of a channel's circuit breaker.

    Uses (str, Enum) for database serialization to channel_circuits.state.
    """

    CLOSED = "closed"
    OPEN = "open"


class StageOutcome(str, Enum):
    """Decision of the stage completion policy.

    NOT stored directly - derived from send record counts on demand.
    """

    COMPLETE = "complete"
    STILL_RUNNING = "still_running"
    FAILED = "failed"


class TaskKind(str, Enum):
    """Kind of unit of work held in the durable task queue.

    Uses (str, Enum) for database serialization to tasks.kind.
    """

    TICK = "tick"
    DISPATCH_CHUNK = "dispatch_chunk"
    SEND = "send"
    CHECK_STAGE_COMPLETION = "check_stage_completion"


class TaskStatus(str, Enum):
    """Lifecycle of a queued task.

    Uses (str, Enum) for database serialization to tasks.status.
    """

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class Metric(str, Enum):
    """Engagement metric a condition node reads off a recipient's SendRecord.

    Stored inside flow snapshots by value.
    """

    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    OPEN_COUNT = "open_count"
    CLICK_COUNT = "click_count"


# Names accepted in flow definitions, mapped to the canonical metric
METRIC_ALIASES: dict[str, Metric] = {
    "opened": Metric.OPENED,
    "views": Metric.OPENED,
    "email_opened": Metric.OPENED,
    "clicked": Metric.CLICKED,
    "clicks": Metric.CLICKED,
    "email_clicked": Metric.CLICKED,
    "bounced": Metric.BOUNCED,
    "bounces": Metric.BOUNCED,
    "email_bounced": Metric.BOUNCED,
    "open_count": Metric.OPEN_COUNT,
    "total_opens": Metric.OPEN_COUNT,
    "click_count": Metric.CLICK_COUNT,
    "total_clicks": Metric.CLICK_COUNT,
}
