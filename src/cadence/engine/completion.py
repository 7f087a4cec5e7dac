# src/cadence/engine/completion.py
"""Stage completion policy.

One pure decision shared by the completion check task and the recovery
sweeper: given how many sends a StageRun expected and how many of its
SendRecords are terminal or still pending, is the stage done?
"""

from __future__ import annotations

from dataclasses import dataclass

from cadence.contracts.enums import StageOutcome


@dataclass(frozen=True)
class StageCompletionPolicy:
    """Decide a send StageRun's outcome from its send evidence.

    Rules, in order:

    1. Nothing was expected: complete.
    2. Some records are still pending: still running.
    3. No record exists at all: failed (no evidence anything was sent).
    4. At least ``completion_ratio`` of the expected sends are terminal:
       complete. Failed sends count as terminal; the ratio leaves room for
       recipients that were skipped or never got a record.
    5. Otherwise the threshold can no longer be met: failed.

    Example:
        policy = StageCompletionPolicy(completion_ratio=0.8)
        policy.decide(expected=100, terminal=80, pending=0)  # COMPLETE
        policy.decide(expected=100, terminal=79, pending=1)  # STILL_RUNNING
    """

    completion_ratio: float = 0.8

    def __post_init__(self) -> None:
        if not 0 < self.completion_ratio <= 1:
            raise ValueError(
                f"completion_ratio must be in (0, 1], got {self.completion_ratio}"
            )

    def decide(self, expected: int, terminal: int, pending: int) -> StageOutcome:
        if expected < 0 or terminal < 0 or pending < 0:
            raise ValueError(
                f"Counts must be non-negative: expected={expected}, "
                f"terminal={terminal}, pending={pending}"
            )
        if expected == 0:
            return StageOutcome.COMPLETE
        if pending > 0:
            return StageOutcome.STILL_RUNNING
        if terminal == 0:
            return StageOutcome.FAILED
        if terminal >= self.completion_ratio * expected:
            return StageOutcome.COMPLETE
        return StageOutcome.FAILED
