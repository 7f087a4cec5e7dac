"""Error taxonomy for the flow execution engine.

Two families live here:

- Real failures (``TransientTransportError``, ``PermanentTransportError``,
  ``GraphIntegrityError``) that end up recorded on a SendRecord or an
  Execution.
- Scheduling signals (``RateLimited``, ``CircuitOpen``) that are never
  recorded as failures. Whoever catches one re-queues the unit of work
  with ``retry_after`` seconds of delay.
"""

from __future__ import annotations

from datetime import timedelta


class CadenceError(Exception):
    """Base class for all engine errors."""


# === Transport ===


class TransportError(CadenceError):
    """Sending a message through a provider failed."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel} transport failed: {message}")
        self.channel = channel
        self.detail = message


class TransientTransportError(TransportError):
    """Provider failure worth retrying with backoff."""


class SendTimeout(TransientTransportError):
    """Send exceeded its bounded execution time."""

    def __init__(self, channel: str, timeout_seconds: float) -> None:
        super().__init__(channel, f"timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class PermanentTransportError(TransportError):
    """Provider rejected the message for good (bad destination, bad content)."""


# === Scheduling signals ===


class SchedulingSignal(CadenceError):
    """Not an error: the unit of work must be re-queued after ``retry_after``."""

    def __init__(self, channel: str, retry_after: float, message: str) -> None:
        super().__init__(message)
        self.channel = channel
        self.retry_after = retry_after


class RateLimited(SchedulingSignal):
    """Channel send window exhausted."""

    def __init__(self, channel: str, retry_after: float) -> None:
        super().__init__(
            channel,
            retry_after,
            f"{channel} rate limit reached, retry in {retry_after:.1f}s",
        )


class CircuitOpen(SchedulingSignal):
    """Channel circuit breaker is open; no sends until cooldown expires."""

    def __init__(self, channel: str, retry_after: float) -> None:
        super().__init__(
            channel,
            retry_after,
            f"{channel} circuit open, retry in {retry_after:.1f}s",
        )


class RetryLater(SchedulingSignal):
    """Transient send failure already recorded; try again after backoff."""

    def __init__(self, channel: str, retry_after: float, attempt: int, reason: str) -> None:
        super().__init__(
            channel,
            retry_after,
            f"{channel} attempt {attempt} failed ({reason}), retry in {retry_after:.1f}s",
        )
        self.attempt = attempt


# === Graph ===


class GraphValidationError(CadenceError):
    """Raised when a flow definition fails validation."""


class GraphIntegrityError(GraphValidationError):
    """Referenced node or edge is missing or malformed. Fatal to the execution."""

    def __init__(self, flow_id: str | None, detail: str) -> None:
        prefix = f"Flow '{flow_id}': " if flow_id else ""
        super().__init__(f"{prefix}{detail}")
        self.flow_id = flow_id
        self.detail = detail


# === Recovery ===


class StaleStageDetected(CadenceError):
    """A StageRun has been active past its staleness threshold.

    Raised by the scheduler guard and consumed by the recovery sweeper;
    never surfaced to callers.
    """

    def __init__(self, stage_run_id: str, age: timedelta) -> None:
        minutes = age.total_seconds() / 60
        super().__init__(f"StageRun {stage_run_id} stale for {minutes:.1f} minutes")
        self.stage_run_id = stage_run_id
        self.age = age


class ExecutionNotFoundError(CadenceError):
    """No execution exists with the requested id."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class FlowNotFoundError(CadenceError):
    """No flow is stored under the requested id."""

    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow not found: {flow_id}")
        self.flow_id = flow_id
